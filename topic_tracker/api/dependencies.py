"""
Dependency injection for FastAPI endpoints.
"""

from typing import AsyncGenerator

import redis.asyncio as redis

from topic_tracker.config.settings import get_settings
from topic_tracker.config.topics import TopicCatalog
from topic_tracker.events.broadcaster import EventBroadcaster
from topic_tracker.locking.advisory import AdvisoryLockService
from topic_tracker.queues.work_queue import TopicJobQueue
from topic_tracker.scheduling.scheduler import TopicScheduler
from topic_tracker.services.triggers import TopicTriggerService
from topic_tracker.storage.database import Database
from topic_tracker.storage.repository import RunRepository, TaskRepository, TopicRepository
from topic_tracker.tasks.ledger import TaskLedger

# Global instances (initialized on first request)
_redis_client: redis.Redis | None = None
_database: Database | None = None
_catalog: TopicCatalog | None = None
_job_queue: TopicJobQueue | None = None
_broadcaster: EventBroadcaster | None = None
_scheduler: TopicScheduler | None = None


async def get_redis_client() -> AsyncGenerator[redis.Redis, None]:
    """Get Redis client for health checks."""
    global _redis_client

    if _redis_client is None:
        settings = get_settings()
        _redis_client = redis.from_url(
            str(settings.redis_url),
            encoding="utf-8",
            decode_responses=True,
        )

    yield _redis_client


async def get_database() -> Database:
    """Get the shared connection pool, connecting on first use."""
    global _database

    if _database is None:
        _database = Database()
        await _database.connect()

    return _database


def get_catalog() -> TopicCatalog:
    global _catalog

    if _catalog is None:
        _catalog = TopicCatalog()
        _catalog.load()

    return _catalog


async def get_job_queue() -> TopicJobQueue:
    global _job_queue

    if _job_queue is None:
        ledger = TaskLedger(TaskRepository(await get_database()))
        _job_queue = TopicJobQueue(on_abandoned=ledger.mark_abandoned)
        await _job_queue.connect()

    return _job_queue


async def get_topic_repository() -> TopicRepository:
    return TopicRepository(await get_database())


async def get_run_repository() -> RunRepository:
    return RunRepository(await get_database())


async def get_task_ledger() -> TaskLedger:
    return TaskLedger(TaskRepository(await get_database()))


async def get_lock_service() -> AdvisoryLockService:
    return AdvisoryLockService(await get_database())


async def get_trigger_service() -> TopicTriggerService:
    """
    Get the trigger service.

    Built per request on top of the shared pool, catalog and queue.
    """
    database = await get_database()
    return TopicTriggerService(
        get_catalog(),
        TaskLedger(TaskRepository(database)),
        await get_job_queue(),
        topics=TopicRepository(database),
    )


async def get_event_broadcaster() -> EventBroadcaster:
    """Get the broadcaster instance, starting its heartbeat on first use."""
    global _broadcaster

    if _broadcaster is None:
        settings = get_settings()
        _broadcaster = EventBroadcaster(
            max_connections=settings.ws_max_connections,
            heartbeat_interval=settings.ws_heartbeat_seconds,
        )
        await _broadcaster.start()

    return _broadcaster


async def stop_event_broadcaster() -> None:
    global _broadcaster

    if _broadcaster is not None:
        await _broadcaster.stop()
        _broadcaster = None


def set_scheduler(scheduler: TopicScheduler | None) -> None:
    """Register the in-process scheduler (API started with workers)."""
    global _scheduler
    _scheduler = scheduler


def get_scheduler() -> TopicScheduler | None:
    return _scheduler


async def cleanup_dependencies() -> None:
    """Clean up global dependencies on shutdown."""
    global _redis_client, _database, _catalog, _job_queue, _scheduler

    _catalog = None
    _scheduler = None

    if _job_queue is not None:
        await _job_queue.close()
        _job_queue = None

    if _database is not None:
        await _database.close()
        _database = None

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None

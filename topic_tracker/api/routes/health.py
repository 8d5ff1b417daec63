"""Health endpoint: Postgres, Redis, scheduler, queue depth and held locks."""

import time
from collections.abc import Awaitable, Callable

import structlog
from fastapi import APIRouter, Depends

from topic_tracker.api.dependencies import (
    get_catalog,
    get_database,
    get_job_queue,
    get_lock_service,
    get_redis_client,
    get_scheduler,
)
from topic_tracker.api.models import ComponentHealth, HealthResponse
from topic_tracker.config.topics import TopicCatalog
from topic_tracker.locking.advisory import AdvisoryLockService
from topic_tracker.queues.work_queue import TopicJobQueue
from topic_tracker.storage.database import Database

router = APIRouter()
logger = structlog.get_logger(__name__)


async def _probe(check: Callable[[], Awaitable[bool | None]]) -> ComponentHealth:
    """Run one connectivity check; ``False`` or an exception means unhealthy."""
    start = time.perf_counter()
    details: dict[str, str] = {}
    try:
        ok = await check() is not False
    except Exception as e:
        ok = False
        details["error"] = str(e)
    return ComponentHealth(
        status="healthy" if ok else "unhealthy",
        latency_ms=round((time.perf_counter() - start) * 1000, 2),
        details=details,
    )


def _check_scheduler() -> ComponentHealth:
    scheduler = get_scheduler()
    if scheduler is None:
        return ComponentHealth(status="disabled", details={"reason": "not running in this process"})
    return ComponentHealth(
        status="healthy" if scheduler.is_running() else "unhealthy",
        details={"schedules": len(scheduler.schedule_info())},
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health",
)
async def health_check(
    db: Database = Depends(get_database),
    redis_client=Depends(get_redis_client),
    queue: TopicJobQueue = Depends(get_job_queue),
    locks: AdvisoryLockService = Depends(get_lock_service),
    catalog: TopicCatalog = Depends(get_catalog),
) -> HealthResponse:
    components = {
        "database": await _probe(db.health_check),
        "redis": await _probe(redis_client.ping),
        "scheduler": _check_scheduler(),
    }

    queue_counts: dict[str, int] = {}
    try:
        queue_counts = await queue.stats()
    except Exception as e:
        logger.warning("Queue stats unavailable", error=str(e))

    held_locks: list[dict] = []
    if components["database"].status == "healthy":
        try:
            held_locks = await locks.active_locks()
        except Exception as e:
            logger.warning("Lock listing unavailable", error=str(e))

    core = (components["database"].status, components["redis"].status)
    if all(s == "healthy" for s in core):
        overall = "healthy" if components["scheduler"].status != "unhealthy" else "degraded"
    elif any(s == "healthy" for s in core):
        overall = "degraded"
    else:
        overall = "unhealthy"

    return HealthResponse(
        status=overall,
        components=components,
        topics_count=len(catalog.all()),
        enabled_topics=len(catalog.enabled()),
        queue=queue_counts,
        active_locks=held_locks,
    )

"""
Trigger surface for topic operations.

Validates a request up front, records it as a task and puts a job on the
queue. Callers get the task and job ids back immediately; the pipeline
itself runs on a worker.
"""

from typing import Any

import structlog

from topic_tracker.config.topics import TopicCatalog, TopicConfig
from topic_tracker.queues.work_queue import TopicJobQueue
from topic_tracker.services.errors import (
    ConfirmationRequiredError,
    TopicDisabledError,
    TopicNotFoundError,
)
from topic_tracker.services.orchestrator import parse_period
from topic_tracker.storage.repository import TopicRepository
from topic_tracker.storage.schemas import Task, TaskKind, TaskStatus
from topic_tracker.tasks.ledger import TaskLedger

logger = structlog.get_logger(__name__)


class TopicTriggerService:
    """
    Enqueues process, revert and clean jobs.

    Usage:
        triggers = TopicTriggerService(catalog, ledger, queue, topic_repo)
        task, job_id = await triggers.request_process("python-releases", force=False, requester="api")
    """

    def __init__(
        self,
        catalog: TopicCatalog,
        ledger: TaskLedger,
        queue: TopicJobQueue,
        topics: TopicRepository | None = None,
    ):
        self._catalog = catalog
        self._ledger = ledger
        self._queue = queue
        self._topics = topics

    def _topic(self, slug: str, require_enabled: bool = False) -> TopicConfig:
        config = self._catalog.get(slug)
        if config is None:
            raise TopicNotFoundError(slug)
        if require_enabled and not config.enabled:
            raise TopicDisabledError(slug)
        return config

    async def request_process(
        self, slug: str, force: bool = False, requester: str | None = None
    ) -> tuple[Task, str]:
        self._topic(slug, require_enabled=True)
        return await self._submit(
            TaskKind.PROCESS, slug, {"force": force}, requester, force=force
        )

    async def request_revert(
        self, slug: str, period: str, requester: str | None = None
    ) -> tuple[Task, str]:
        parse_period(period)
        self._topic(slug)
        return await self._submit(TaskKind.REVERT, slug, {"period": period}, requester)

    async def request_clean(
        self, slug: str, confirm: bool = False, requester: str | None = None
    ) -> tuple[Task, str]:
        if not confirm:
            raise ConfirmationRequiredError(slug)
        self._topic(slug)
        return await self._submit(TaskKind.CLEAN, slug, {"confirm": True}, requester)

    async def _submit(
        self,
        kind: TaskKind,
        slug: str,
        params: dict[str, Any],
        requester: str | None,
        force: bool = False,
    ) -> tuple[Task, str]:
        topic_id = await self._topic_id(slug)
        task = await self._ledger.create(kind, {"topic_slug": slug, **params}, requester, topic_id)

        try:
            job_id = await self._queue.enqueue(kind, slug, params=params, task_id=task.id, force=force)
        except Exception as e:
            logger.warning("Enqueue failed", task_id=task.id, kind=kind.value, topic_slug=slug, error=str(e))
            await self._ledger.set_status(task.id, TaskStatus.FAILED, error=str(e))
            raise

        logger.info("Job enqueued", task_id=task.id, job_id=job_id, kind=kind.value, topic_slug=slug)
        return task, job_id

    async def _topic_id(self, slug: str) -> str | None:
        if self._topics is None:
            return None
        topic = await self._topics.get_by_slug(slug)
        return topic.id if topic else None

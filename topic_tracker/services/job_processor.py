"""
Worker-side handler for topic jobs.

Bridges a queued job to the orchestrator and keeps the task ledger in step:
running -> completed, or failed once no attempt is left, or back to
pending while the queue still retries.
"""

from typing import Any

import structlog

from topic_tracker.events.broadcaster import EventPublisher, NullPublisher
from topic_tracker.queues.work_queue import TopicJob
from topic_tracker.services.errors import is_retryable_error
from topic_tracker.services.orchestrator import TopicOrchestrator
from topic_tracker.storage.repository import TopicRepository
from topic_tracker.storage.schemas import TaskKind, TaskStatus
from topic_tracker.tasks.ledger import TaskLedger

logger = structlog.get_logger(__name__)


class TopicJobProcessor:
    """
    Runs one job and records its outcome on the task.

    Implements the worker's JobHandler protocol.
    """

    def __init__(
        self,
        orchestrator: TopicOrchestrator,
        ledger: TaskLedger,
        topics: TopicRepository | None = None,
        publisher: EventPublisher | None = None,
    ):
        self._orchestrator = orchestrator
        self._ledger = ledger
        self._topics = topics
        self._publisher = publisher or NullPublisher()

    def is_retryable(self, exc: BaseException) -> bool:
        return is_retryable_error(exc)

    async def abandon(self, task_id: str, reason: str) -> None:
        await self._ledger.mark_abandoned(task_id, reason)

    async def process(self, job: TopicJob) -> dict[str, Any]:
        log = logger.bind(job_id=job.job_id, task_id=job.task_id, kind=job.kind.value, topic_slug=job.topic_slug)

        if job.task_id:
            await self._ledger.set_status(job.task_id, TaskStatus.RUNNING)

        try:
            result = await self._dispatch(job)
        except Exception as e:
            await self._record_failure(job, e, log)
            raise
        finally:
            await self._publish_stats(job.topic_slug)

        if job.task_id:
            await self._ledger.set_status(job.task_id, TaskStatus.COMPLETED, result=result)
        return result

    async def _dispatch(self, job: TopicJob) -> dict[str, Any]:
        params = job.params
        if job.kind is TaskKind.PROCESS:
            result = await self._orchestrator.process_topic(
                job.topic_slug, force=bool(params.get("force", job.force))
            )
        elif job.kind is TaskKind.REVERT:
            result = await self._orchestrator.revert_topic(job.topic_slug, params.get("period", ""))
        else:
            result = await self._orchestrator.clean_topic(
                job.topic_slug, confirm=bool(params.get("confirm", False))
            )
        return result.to_dict()

    async def _record_failure(self, job: TopicJob, exc: Exception, log) -> None:
        if not job.task_id:
            return

        if not self.is_retryable(exc) or job.is_last_attempt:
            await self._ledger.set_status(job.task_id, TaskStatus.FAILED, error=str(exc))
            return

        log.warning(
            "Job attempt failed, task returns to pending",
            attempt=job.attempt,
            max_attempts=job.max_attempts,
            error=str(exc),
        )
        await self._ledger.set_status(job.task_id, TaskStatus.PENDING, error=str(exc))

    async def _publish_stats(self, slug: str) -> None:
        if self._topics is None:
            return
        try:
            stats = await self._topics.get_stats(slug)
            await self._publisher.broadcast_topic_stats(stats)
        except Exception as e:
            logger.warning("Failed to broadcast topic stats", topic_slug=slug, error=str(e))

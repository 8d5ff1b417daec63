"""
Audit trail of requested operations.

Every process/revert/clean request becomes a Task. The ledger moves it
through pending -> running -> completed|failed; a task drops back to
pending while its job waits for a retry. The terminal status is written
exactly once.
"""

from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from topic_tracker.storage.repository import TaskRepository
from topic_tracker.storage.schemas import Task, TaskKind, TaskStatus

logger = structlog.get_logger(__name__)

DEFAULT_RETENTION_DAYS = 7


class TaskLedger:
    """Status bookkeeping for tasks on top of TaskRepository."""

    def __init__(self, repository: TaskRepository):
        self._repo = repository

    async def create(
        self,
        kind: TaskKind | str,
        params: dict[str, Any],
        requester: str | None,
        topic_id: str | None = None,
    ) -> Task:
        task = await self._repo.create(TaskKind(kind), params, requester, topic_id)
        logger.info(
            "Task created",
            task_id=task.id,
            kind=task.kind.value,
            topic_slug=params.get("topic_slug"),
            requester=requester,
        )
        return task

    async def set_status(
        self,
        task_id: str,
        status: TaskStatus | str,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> Task | None:
        """
        Move a task to ``status``.

        Returns the updated task, or None when the task is unknown or
        already terminal (terminal statuses never change).
        """
        status = TaskStatus(status)

        if status is TaskStatus.RUNNING:
            task = await self._repo.set_running(task_id)
        elif status is TaskStatus.PENDING:
            task = await self._repo.set_pending(task_id, error)
        elif status is TaskStatus.COMPLETED:
            task = await self._repo.set_terminal(task_id, status, result=result or {})
        else:
            task = await self._repo.set_terminal(
                task_id, status, error=error or "Unknown error"
            )

        if task is None:
            logger.warning(
                "Task status not updated",
                task_id=task_id,
                status=status.value,
            )
        else:
            logger.info("Task status updated", task_id=task_id, status=status.value)
        return task

    async def mark_abandoned(self, task_id: str, reason: str) -> Task | None:
        """Fail a task whose job was cancelled or dead-lettered before it ran."""
        return await self.set_status(task_id, TaskStatus.FAILED, error=reason)

    async def get(self, task_id: str) -> Task | None:
        return await self._repo.get(task_id)

    async def list(
        self,
        topic_slug: str | None = None,
        status: TaskStatus | str | None = None,
        limit: int = 50,
    ) -> list[Task]:
        status_value = TaskStatus(status).value if status else None
        return await self._repo.list_tasks(topic_slug, status_value, limit)

    async def delete(self, task_id: str) -> bool:
        return await self._repo.delete(task_id)

    async def delete_older_than(self, days: int = DEFAULT_RETENTION_DAYS) -> int:
        """Delete completed/failed tasks created more than ``days`` ago."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        deleted = await self._repo.delete_terminal_before(cutoff)
        logger.info("Old tasks deleted", deleted=deleted, older_than_days=days)
        return deleted

    async def stats(self) -> dict[str, Any]:
        by_status = await self._repo.count_by("status")
        by_kind = await self._repo.count_by("kind")
        return {
            "total": sum(by_status.values()),
            "by_status": {s.value: by_status.get(s.value, 0) for s in TaskStatus},
            "by_kind": {k.value: by_kind.get(k.value, 0) for k in TaskKind},
        }

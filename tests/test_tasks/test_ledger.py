"""Tests for TaskLedger and TaskRepository with mocked storage."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from tests.factories import make_task
from topic_tracker.storage.repository import TaskRepository, _record_to_task
from topic_tracker.storage.schemas import TaskKind, TaskStatus
from topic_tracker.tasks.ledger import TaskLedger


def _make_task_row(**overrides):
    """Create a mock asyncpg Record as a dict."""
    row = {
        "id": "5f0c7c1e-0000-4000-8000-000000000001",
        "topic_id": None,
        "kind": "process",
        "status": "pending",
        "params": '{"topic_slug": "python-releases", "force": false}',
        "requester": "api",
        "result": None,
        "error": None,
        "created_at": datetime(2024, 1, 2, 10, 0, tzinfo=timezone.utc),
        "started_at": None,
        "completed_at": None,
    }
    row.update(overrides)
    return row


@pytest.fixture
def mock_repo():
    return AsyncMock(spec=TaskRepository)


@pytest.fixture
def ledger(mock_repo):
    return TaskLedger(mock_repo)


class TestRecordToTask:
    def test_basic_conversion(self):
        task = _record_to_task(_make_task_row())

        assert task.kind is TaskKind.PROCESS
        assert task.status is TaskStatus.PENDING
        assert task.topic_slug == "python-releases"
        assert task.params["force"] is False

    def test_result_as_string(self):
        task = _record_to_task(_make_task_row(status="completed", result='{"new_items": 3}'))
        assert task.result == {"new_items": 3}

    def test_to_dict_uses_iso_dates(self):
        data = _record_to_task(_make_task_row()).to_dict()
        assert data["created_at"] == "2024-01-02T10:00:00+00:00"
        assert data["completed_at"] is None


class TestTaskRepository:
    """TaskRepository against a mocked Database."""

    @pytest.mark.asyncio
    async def test_create_serializes_params(self):
        db = AsyncMock()
        db.fetchrow.return_value = _make_task_row()
        repo = TaskRepository(db)

        task = await repo.create(TaskKind.PROCESS, {"topic_slug": "python-releases"}, "api")

        args = db.fetchrow.await_args.args
        assert args[1:] == (None, "process", '{"topic_slug": "python-releases"}', "api")
        assert task.requester == "api"

    @pytest.mark.asyncio
    async def test_terminal_transition_on_terminal_row_returns_none(self):
        db = AsyncMock()
        db.fetchrow.return_value = None
        repo = TaskRepository(db)

        assert await repo.set_terminal("task-1", TaskStatus.FAILED, error="boom") is None

    @pytest.mark.asyncio
    async def test_list_filters_build_query(self):
        db = AsyncMock()
        db.fetch.return_value = [_make_task_row()]
        repo = TaskRepository(db)

        tasks = await repo.list_tasks("python-releases", "pending", 10)

        query, *params = db.fetch.await_args.args
        assert "params->>'topic_slug' = $1" in query
        assert "status = $2" in query
        assert "LIMIT $3" in query
        assert params == ["python-releases", "pending", 10]
        assert len(tasks) == 1

    @pytest.mark.asyncio
    async def test_delete_reads_affected_rows(self):
        db = AsyncMock()
        db.execute.return_value = "DELETE 1"
        repo = TaskRepository(db)

        assert await repo.delete("task-1") is True

        db.execute.return_value = "DELETE 0"
        assert await repo.delete("task-2") is False

    @pytest.mark.asyncio
    async def test_count_by_rejects_unknown_column(self):
        repo = TaskRepository(AsyncMock())
        with pytest.raises(ValueError):
            await repo.count_by("requester")


class TestTaskLedger:
    """Status bookkeeping through the ledger."""

    @pytest.mark.asyncio
    async def test_create_passes_kind_enum(self, ledger, mock_repo):
        mock_repo.create.return_value = make_task()

        task = await ledger.create("process", {"topic_slug": "python-releases"}, "cli")

        mock_repo.create.assert_awaited_once_with(
            TaskKind.PROCESS, {"topic_slug": "python-releases"}, "cli", None
        )
        assert task.id == "task-1"

    @pytest.mark.asyncio
    async def test_set_status_routes_to_repository(self, ledger, mock_repo):
        mock_repo.set_running.return_value = make_task(status=TaskStatus.RUNNING)
        mock_repo.set_pending.return_value = make_task(status=TaskStatus.PENDING)
        mock_repo.set_terminal.return_value = make_task(status=TaskStatus.COMPLETED)

        await ledger.set_status("task-1", "running")
        await ledger.set_status("task-1", TaskStatus.PENDING, error="retrying")
        await ledger.set_status("task-1", TaskStatus.COMPLETED, result={"new_items": 2})

        mock_repo.set_running.assert_awaited_once_with("task-1")
        mock_repo.set_pending.assert_awaited_once_with("task-1", "retrying")
        mock_repo.set_terminal.assert_awaited_once_with(
            "task-1", TaskStatus.COMPLETED, result={"new_items": 2}
        )

    @pytest.mark.asyncio
    async def test_failed_without_message_gets_default_error(self, ledger, mock_repo):
        mock_repo.set_terminal.return_value = make_task(status=TaskStatus.FAILED)

        await ledger.set_status("task-1", TaskStatus.FAILED)

        mock_repo.set_terminal.assert_awaited_once_with(
            "task-1", TaskStatus.FAILED, error="Unknown error"
        )

    @pytest.mark.asyncio
    async def test_terminal_status_written_once(self, ledger, mock_repo):
        """A second terminal transition is rejected by the repository."""
        mock_repo.set_terminal.side_effect = [make_task(status=TaskStatus.COMPLETED), None]

        first = await ledger.set_status("task-1", TaskStatus.COMPLETED, result={})
        second = await ledger.set_status("task-1", TaskStatus.FAILED, error="late")

        assert first.status is TaskStatus.COMPLETED
        assert second is None

    @pytest.mark.asyncio
    async def test_mark_abandoned_fails_task(self, ledger, mock_repo):
        mock_repo.set_terminal.return_value = make_task(status=TaskStatus.FAILED)

        task = await ledger.mark_abandoned("task-1", "Job cancelled")

        assert task.status is TaskStatus.FAILED
        mock_repo.set_terminal.assert_awaited_once_with(
            "task-1", TaskStatus.FAILED, error="Job cancelled"
        )

    @pytest.mark.asyncio
    async def test_invalid_status_raises(self, ledger):
        with pytest.raises(ValueError):
            await ledger.set_status("task-1", "exploded")

    @pytest.mark.asyncio
    async def test_list_normalizes_status(self, ledger, mock_repo):
        mock_repo.list_tasks.return_value = []

        await ledger.list(topic_slug="python-releases", status=TaskStatus.FAILED, limit=5)
        await ledger.list()

        assert mock_repo.list_tasks.await_args_list[0].args == ("python-releases", "failed", 5)
        assert mock_repo.list_tasks.await_args_list[1].args == (None, None, 50)

    @pytest.mark.asyncio
    async def test_delete_older_than_uses_cutoff(self, ledger, mock_repo):
        mock_repo.delete_terminal_before.return_value = 4
        before = datetime.now(timezone.utc)

        deleted = await ledger.delete_older_than(7)

        cutoff = mock_repo.delete_terminal_before.await_args.args[0]
        assert deleted == 4
        assert abs((before - timedelta(days=7) - cutoff).total_seconds()) < 5

    @pytest.mark.asyncio
    async def test_stats_fill_missing_buckets(self, ledger, mock_repo):
        mock_repo.count_by.side_effect = lambda column: (
            {"completed": 3, "failed": 1} if column == "status" else {"process": 4}
        )

        stats = await ledger.stats()

        assert stats["total"] == 4
        assert stats["by_status"] == {"pending": 0, "running": 0, "completed": 3, "failed": 1}
        assert stats["by_kind"] == {"process": 4, "revert": 0, "clean": 0}

"""Tests for the task ledger endpoints."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

from tests.factories import make_task
from topic_tracker.storage.schemas import TaskKind, TaskStatus


class TestListTasks:
    def test_list(self, client, mock_ledger):
        mock_ledger.list = AsyncMock(
            return_value=[make_task("task-2", kind=TaskKind.REVERT), make_task("task-1")]
        )

        resp = client.get("/tasks", params={"topic": "python-releases", "status": "pending", "limit": 10})

        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 2
        assert [t["id"] for t in data["tasks"]] == ["task-2", "task-1"]
        assert data["tasks"][0]["kind"] == "revert"
        mock_ledger.list.assert_awaited_once_with(topic_slug="python-releases", status="pending", limit=10)

    def test_invalid_status(self, client, mock_ledger):
        resp = client.get("/tasks", params={"status": "exploded"})

        assert resp.status_code == 422
        mock_ledger.list.assert_not_awaited()

    def test_limit_bounds(self, client):
        assert client.get("/tasks", params={"limit": 0}).status_code == 422
        assert client.get("/tasks", params={"limit": 501}).status_code == 422


class TestGetTask:
    def test_found(self, client, mock_ledger):
        task = make_task(status=TaskStatus.COMPLETED)
        task.result = {"items_processed": 4}
        task.completed_at = datetime(2024, 1, 2, 10, 5, tzinfo=timezone.utc)
        mock_ledger.get = AsyncMock(return_value=task)

        resp = client.get("/tasks/task-1")

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "completed"
        assert data["result"] == {"items_processed": 4}
        assert data["completed_at"] == "2024-01-02T10:05:00+00:00"
        assert data["params"] == {"topic_slug": "python-releases"}

    def test_missing(self, client):
        resp = client.get("/tasks/nope")

        assert resp.status_code == 404
        assert resp.json()["detail"] == "Task nope not found"


class TestDeleteTask:
    def test_deleted(self, client, mock_ledger):
        mock_ledger.delete = AsyncMock(return_value=True)

        resp = client.delete("/tasks/task-1")

        assert resp.status_code == 204
        mock_ledger.delete.assert_awaited_once_with("task-1")

    def test_missing(self, client, mock_ledger):
        mock_ledger.delete = AsyncMock(return_value=False)
        assert client.delete("/tasks/nope").status_code == 404


class TestTaskStats:
    def test_counts(self, client, mock_ledger):
        mock_ledger.stats = AsyncMock(
            return_value={
                "total": 3,
                "by_status": {"completed": 2, "failed": 1},
                "by_kind": {"process": 3},
            }
        )

        resp = client.get("/tasks/stats")

        assert resp.status_code == 200
        assert resp.json()["by_status"] == {"completed": 2, "failed": 1}

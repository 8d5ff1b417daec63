"""Tests for the topic-tracker command-line interface."""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from tests.factories import DISABLED_TOPIC, PYTHON_TOPIC, make_task, write_catalog
from topic_tracker.cli import main
from topic_tracker.config.settings import get_settings
from topic_tracker.queues.work_queue import DuplicateJobError
from topic_tracker.services.errors import TopicNotFoundError
from topic_tracker.storage.schemas import TaskStatus


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def triggers():
    """Trigger service handed out by a patched ``_services``."""
    service = MagicMock()
    service.request_process = AsyncMock(return_value=(make_task(), "job-1"))
    service.request_revert = AsyncMock(return_value=(make_task("task-2"), "job-2"))
    service.request_clean = AsyncMock(return_value=(make_task("task-3"), "job-3"))

    @asynccontextmanager
    async def fake_services():
        yield {"triggers": service}

    with patch("topic_tracker.cli._services", fake_services):
        yield service


class TestTriggerCommands:
    def test_process_queues_job(self, runner, triggers):
        result = runner.invoke(main, ["process", "python-releases", "--force"])

        assert result.exit_code == 0, result.output
        assert "Queued process for python-releases" in result.output
        assert "task: task-1" in result.output
        assert "job:  job-1" in result.output
        triggers.request_process.assert_awaited_once_with("python-releases", force=True, requester="cli")

    def test_process_unknown_topic(self, runner, triggers):
        triggers.request_process = AsyncMock(side_effect=TopicNotFoundError("nope"))

        result = runner.invoke(main, ["process", "nope"])

        assert result.exit_code == 1
        assert "Topic configuration not found: nope" in result.output

    def test_process_already_pending(self, runner, triggers):
        triggers.request_process = AsyncMock(
            side_effect=DuplicateJobError("process", "python-releases", "job-0")
        )

        result = runner.invoke(main, ["process", "python-releases"])

        assert result.exit_code == 1
        assert "already queued or running" in result.output

    def test_revert(self, runner, triggers):
        result = runner.invoke(main, ["revert", "python-releases", "12h"])

        assert result.exit_code == 0, result.output
        triggers.request_revert.assert_awaited_once_with("python-releases", "12h", requester="cli")

    def test_revert_invalid_period(self, runner, triggers):
        result = runner.invoke(main, ["revert", "python-releases", "2w"])

        assert result.exit_code == 1
        assert "Invalid period format: 2w" in result.output
        triggers.request_revert.assert_not_awaited()

    def test_clean_requires_yes(self, runner, triggers):
        result = runner.invoke(main, ["clean", "python-releases"])

        assert result.exit_code == 1
        assert "without --yes" in result.output
        triggers.request_clean.assert_not_awaited()

    def test_clean_confirmed(self, runner, triggers):
        result = runner.invoke(main, ["clean", "python-releases", "--yes"])

        assert result.exit_code == 0, result.output
        triggers.request_clean.assert_awaited_once_with("python-releases", confirm=True, requester="cli")


class TestInspectionCommands:
    def test_schedules(self, runner, tmp_path, monkeypatch):
        monkeypatch.setenv("TOPICS_DIR", str(tmp_path / "topics"))
        monkeypatch.setenv("GLOBAL_CONFIG_PATH", str(tmp_path / "global.json"))
        write_catalog(tmp_path, [PYTHON_TOPIC, DISABLED_TOPIC])
        # the catalog above reads settings; drop them so the command sees the env
        get_settings.cache_clear()

        result = runner.invoke(main, ["schedules"])

        assert result.exit_code == 0, result.output
        assert "topic-python-releases" in result.output
        assert "0 9 * * *" in result.output
        assert "Europe/Paris" in result.output
        assert "cleanup-tasks" in result.output
        assert DISABLED_TOPIC["slug"] not in result.output

    def test_tasks_listing(self, runner):
        failed = make_task("task-9", status=TaskStatus.FAILED)
        failed.error = "Unknown error"
        ledger = MagicMock()
        ledger.list = AsyncMock(return_value=[failed])
        db = MagicMock()
        db.connect = AsyncMock()
        db.close = AsyncMock()

        with (
            patch("topic_tracker.storage.database.Database", return_value=db),
            patch("topic_tracker.tasks.ledger.TaskLedger", return_value=ledger),
        ):
            result = runner.invoke(main, ["tasks", "--status", "failed", "--limit", "5"])

        assert result.exit_code == 0, result.output
        assert "task-9" in result.output
        assert "(Unknown error)" in result.output
        ledger.list.assert_awaited_once_with(topic_slug=None, status="failed", limit=5)
        db.close.assert_awaited_once()

    def test_tasks_empty(self, runner):
        ledger = MagicMock()
        ledger.list = AsyncMock(return_value=[])
        db = MagicMock()
        db.connect = AsyncMock()
        db.close = AsyncMock()

        with (
            patch("topic_tracker.storage.database.Database", return_value=db),
            patch("topic_tracker.tasks.ledger.TaskLedger", return_value=ledger),
        ):
            result = runner.invoke(main, ["tasks"])

        assert result.exit_code == 0
        assert "No tasks found." in result.output

"""Shared fixtures for API tests."""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from topic_tracker.api.app import create_app
from topic_tracker.api.dependencies import (
    get_run_repository,
    get_task_ledger,
    get_topic_repository,
    get_trigger_service,
)
from topic_tracker.services.triggers import TopicTriggerService
from topic_tracker.storage.repository import RunRepository, TopicRepository
from topic_tracker.tasks.ledger import TaskLedger


@pytest.fixture
def mock_triggers():
    return AsyncMock(spec=TopicTriggerService)


@pytest.fixture
def mock_ledger():
    ledger = AsyncMock(spec=TaskLedger)
    ledger.list = AsyncMock(return_value=[])
    ledger.get = AsyncMock(return_value=None)
    return ledger


@pytest.fixture
def mock_topic_repo():
    repo = AsyncMock(spec=TopicRepository)
    repo.get_stats = AsyncMock(return_value=[])
    return repo


@pytest.fixture
def mock_run_repo():
    repo = AsyncMock(spec=RunRepository)
    repo.list_runs = AsyncMock(return_value=([], 0))
    repo.get = AsyncMock(return_value=None)
    return repo


@pytest.fixture
def client(mock_triggers, mock_ledger, mock_topic_repo, mock_run_repo):
    """FastAPI TestClient with every storage-backed dependency overridden."""
    app = create_app()

    app.dependency_overrides[get_trigger_service] = lambda: mock_triggers
    app.dependency_overrides[get_task_ledger] = lambda: mock_ledger
    app.dependency_overrides[get_topic_repository] = lambda: mock_topic_repo
    app.dependency_overrides[get_run_repository] = lambda: mock_run_repo

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()

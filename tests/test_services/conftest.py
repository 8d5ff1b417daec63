"""Fixtures for orchestrator tests: mocked repositories, adapters and ports."""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest

from tests.factories import DISABLED_TOPIC, PYTHON_TOPIC, make_run, write_catalog
from topic_tracker.ingestion.base_adapter import FetchResult
from topic_tracker.ingestion.deduplication import DeduplicationGate
from topic_tracker.notifications.base import NotificationResult
from topic_tracker.services.orchestrator import TopicOrchestrator
from topic_tracker.storage.schemas import Source, Topic
from topic_tracker.summarization.base import SummaryResult


class FakeLocks:
    """Records the lock names held by the orchestrator."""

    def __init__(self):
        self.held: list[str] = []

    @asynccontextmanager
    async def hold(self, name: str):
        self.held.append(name)
        yield


class FakeDatabase:
    def __init__(self):
        self.transactions = 0
        self.conn = object()

    @asynccontextmanager
    async def transaction(self):
        self.transactions += 1
        yield self.conn


@pytest.fixture
def service_catalog(tmp_path):
    return write_catalog(tmp_path, [{**PYTHON_TOPIC, "assistantId": "asst_123"}, DISABLED_TOPIC])


@pytest.fixture
def adapters():
    """Per-kind adapters returning nothing unless a test scripts them."""
    by_kind = {
        "code-host": AsyncMock(),
        "feed": AsyncMock(),
    }
    for adapter in by_kind.values():
        adapter.fetch_items.return_value = FetchResult()
    factory = MagicMock()
    factory.get.side_effect = lambda kind: by_kind[kind]
    factory.by_kind = by_kind
    return factory


@pytest.fixture
def seen_titles():
    return set()


@pytest.fixture
def summarizer():
    mock = AsyncMock()
    mock.summarize.return_value = SummaryResult(text="Weekly digest", prompt="Summarize these")
    return mock


@pytest.fixture
def notifier():
    mock = AsyncMock()
    mock.post.return_value = NotificationResult(message_id="1700000000.000100")
    return mock


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def fake_locks():
    return FakeLocks()


@pytest.fixture
def publisher():
    return AsyncMock()


@pytest.fixture
def orchestrator(service_catalog, adapters, seen_titles, summarizer, notifier, fake_db, fake_locks, publisher):
    item_repo = AsyncMock()
    item_repo.find_recent_title.side_effect = lambda topic_id, title, since: (
        "item-old" if title in seen_titles else None
    )
    counter = iter(range(1, 1000))
    item_repo.upsert.side_effect = lambda item, conn=None: f"item-{next(counter)}"

    orch = TopicOrchestrator(
        fake_db,
        service_catalog,
        fake_locks,
        adapters,
        dedup=DeduplicationGate(item_repo),
        summarizer=summarizer,
        notifier=notifier,
        publisher=publisher,
    )

    orch._topics = AsyncMock()
    orch._topics.upsert_from_config.return_value = Topic(
        id="topic-1", slug="python-releases", name="Python Releases"
    )
    orch._topics.get_by_slug.return_value = Topic(
        id="topic-1", slug="python-releases", name="Python Releases"
    )
    orch._topics.delete.return_value = 1

    orch._sources = AsyncMock()
    orch._sources.upsert.side_effect = lambda topic_id, cfg: Source(
        id=f"src-{cfg.name}",
        topic_id=topic_id,
        name=cfg.name,
        kind=cfg.kind.value,
        url=cfg.url,
        meta=cfg.meta,
    )
    orch._sources.delete_for_topic.return_value = 2

    orch._watermarks = AsyncMock()
    orch._watermarks.get.return_value = None
    orch._watermarks.delete_for_topic.return_value = 2

    orch._items = item_repo
    item_repo.delete_unreferenced_since.return_value = 5
    item_repo.delete_for_topic.return_value = 12

    orch._runs = AsyncMock()
    orch._runs.create.return_value = make_run()
    orch._runs.ids_since.return_value = ["run-1", "run-2"]
    orch._runs.delete_many.return_value = 2
    orch._runs.delete_for_topic.return_value = 3

    return orch

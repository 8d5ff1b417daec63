"""Tests for exact-title deduplication."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from tests.factories import make_item
from topic_tracker.ingestion.base_adapter import FetchedItem
from topic_tracker.ingestion.deduplication import DeduplicationGate, fingerprint, similarity_hash


@pytest.fixture
def item_repo():
    repo = AsyncMock()
    repo.find_recent_title.return_value = None
    return repo


class TestFingerprint:
    def test_stable_for_same_title_and_url(self):
        a = FetchedItem(title="Release 1.0", url="https://example.com/1")
        b = FetchedItem(title="Release 1.0", url="https://example.com/1", content="different body")

        assert fingerprint(a) == fingerprint(b)
        assert len(fingerprint(a)) == 64

    def test_url_changes_fingerprint(self):
        a = FetchedItem(title="Release 1.0", url="https://example.com/1")
        b = FetchedItem(title="Release 1.0", url="https://example.com/2")
        assert fingerprint(a) != fingerprint(b)

    def test_similarity_hash_is_exact(self):
        item = FetchedItem(title="Release 1.0")
        assert similarity_hash(item) == fingerprint(item)


class TestDeduplicationGate:
    """Tests for DeduplicationGate."""

    @pytest.mark.asyncio
    async def test_new_items_pass_through(self, item_repo):
        gate = DeduplicationGate(item_repo)
        items = [make_item("First"), make_item("Second")]

        unique = await gate.filter_new(items, "topic-1")

        assert unique == items
        assert item_repo.find_recent_title.await_count == 2

    @pytest.mark.asyncio
    async def test_existing_title_is_rejected(self, item_repo):
        """Should drop items whose title already exists for the topic."""
        item_repo.find_recent_title.side_effect = lambda topic_id, title, since: (
            "item-9" if title == "Seen before" else None
        )
        gate = DeduplicationGate(item_repo)

        unique = await gate.filter_new([make_item("Seen before"), make_item("Fresh")], "topic-1")

        assert [i.title for i in unique] == ["Fresh"]

    @pytest.mark.asyncio
    async def test_repeated_titles_in_batch_keep_first(self, item_repo):
        """Should collapse repeats across sources to the first occurrence."""
        gate = DeduplicationGate(item_repo)
        first = make_item("Same headline", source_id="src-1")
        repeat = make_item("  Same headline ", source_id="src-2")

        unique = await gate.filter_new([first, repeat, make_item("Other")], "topic-1")

        assert unique[0] is first
        assert [i.title for i in unique] == ["Same headline", "Other"]
        assert item_repo.find_recent_title.await_count == 2

    @pytest.mark.asyncio
    async def test_lookup_uses_lookback_window(self, item_repo):
        gate = DeduplicationGate(item_repo, lookback_days=7)
        before = datetime.now(timezone.utc)

        await gate.is_duplicate(make_item("Windowed"), "topic-1")

        topic_id, title, since = item_repo.find_recent_title.await_args.args
        assert (topic_id, title) == ("topic-1", "Windowed")
        assert before - timedelta(days=7, seconds=5) <= since <= before - timedelta(days=7) + timedelta(seconds=5)

    @pytest.mark.asyncio
    async def test_lookup_failure_treats_item_as_new(self, item_repo):
        """Should keep the item when the duplicate query fails."""
        item_repo.find_recent_title.side_effect = RuntimeError("connection lost")
        gate = DeduplicationGate(item_repo)

        assert await gate.is_duplicate(make_item("Anything"), "topic-1") is False
        assert len(await gate.filter_new([make_item("Anything")], "topic-1")) == 1

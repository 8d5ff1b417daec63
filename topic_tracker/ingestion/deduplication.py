"""
Exact-title deduplication against recent topic history.

An item is a duplicate when an item of the same topic with the same
(stripped) title was stored within the lookback window. Repeated titles
inside one batch are also collapsed to their first occurrence, so the
check holds across the sources of a topic.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Protocol

from topic_tracker.ingestion.base_adapter import stable_hash
from topic_tracker.storage.repository import ItemRepository

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_DAYS = 30


class _Titled(Protocol):
    title: str
    url: str | None


def fingerprint(item: _Titled) -> str:
    """SHA256 of ``title|url``; stable across processes."""
    return stable_hash(f"{item.title}|{item.url or ''}")


def similarity_hash(item: _Titled) -> str:
    """Identical to the fingerprint; near-duplicate matching is not done."""
    return fingerprint(item)


@dataclass
class DedupStats:
    checked: int = 0
    duplicates: int = 0
    batch_duplicates: int = 0
    errors: int = 0
    titles: set[str] = field(default_factory=set, repr=False)


class DeduplicationGate:
    """
    Rejects items already seen for a topic within the lookback window.

    Usage:
        gate = DeduplicationGate(item_repo, lookback_days=30)
        unique = await gate.filter_new(items, topic_id)
    """

    def __init__(self, items: ItemRepository, lookback_days: int = DEFAULT_LOOKBACK_DAYS):
        self._items = items
        self.lookback_days = lookback_days

    async def is_duplicate(self, item: _Titled, topic_id: str) -> bool:
        """
        Whether the topic already holds an item with this title.

        A failed lookup is logged and the item is treated as new.
        """
        since = datetime.now(timezone.utc) - timedelta(days=self.lookback_days)
        try:
            existing = await self._items.find_recent_title(topic_id, item.title, since)
        except Exception as e:
            logger.error(f"Duplicate check failed for {item.title!r}: {e}")
            return False

        if existing:
            logger.debug(f"Duplicate item found: {item.title!r} (existing id {existing})")
            return True
        return False

    async def filter_new(self, items: list, topic_id: str) -> list:
        """Items that are new for the topic, in input order."""
        stats = DedupStats()
        unique = []

        for item in items:
            stats.checked += 1
            key = item.title.strip()
            if key in stats.titles:
                stats.batch_duplicates += 1
                continue
            stats.titles.add(key)

            if await self.is_duplicate(item, topic_id):
                stats.duplicates += 1
                continue
            unique.append(item)

        logger.info(
            f"Deduplication: {len(unique)}/{stats.checked} new "
            f"({stats.duplicates} seen before, {stats.batch_duplicates} repeated in batch)"
        )
        return unique

"""
RSS/Atom feed adapter.

The feed is fetched through HTTPClient and parsed with feedparser. Entries
published at or before the watermark are skipped; the watermark is the ISO
timestamp of the newest accepted entry.
"""

import calendar
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import feedparser

from topic_tracker.config.topics import SourceKind
from topic_tracker.ingestion.base_adapter import (
    FetchedItem,
    FetchResult,
    SourceAdapter,
    parse_watermark_time,
    sanitize_content,
    strip_html,
    to_iso,
)
from topic_tracker.storage.schemas import Source

logger = logging.getLogger(__name__)


class FeedAdapter(SourceAdapter):
    """Adapter for RSS and Atom feeds."""

    @property
    def kind(self) -> SourceKind:
        return SourceKind.FEED

    async def fetch_items(self, source: Source, watermark: str | None) -> FetchResult:
        logger.info(f"Fetching feed: {source.url}")

        async with self._http() as client:
            response = await client.get(
                source.url,
                headers={"Accept": "application/rss+xml, application/atom+xml, application/xml, text/xml"},
            )

        feed = feedparser.parse(response.content)
        entries = feed.get("entries", [])
        if not entries:
            logger.warning(f"No entries found in feed: {source.url}")
            return FetchResult()

        feed_title = feed.get("feed", {}).get("title")
        cutoff = parse_watermark_time(watermark)
        items: list[FetchedItem] = []
        latest: datetime | None = None

        for entry in entries:
            published_at = self._parse_timestamp(entry)

            if cutoff and published_at and published_at <= cutoff:
                continue

            title = (entry.get("title") or "").strip()
            if not title:
                logger.warning(f"Skipping entry without title from {source.url}")
                continue

            if published_at and (latest is None or published_at > latest):
                latest = published_at

            content = self._extract_content(entry)
            items.append(
                FetchedItem(
                    title=title,
                    content=sanitize_content(content) if content else "",
                    url=entry.get("link"),
                    published_at=published_at,
                    metadata={
                        "guid": entry.get("id") or entry.get("guid"),
                        "author": entry.get("author"),
                        "categories": [t.get("term") for t in entry.get("tags", []) if t.get("term")],
                        "source": feed_title,
                    },
                )
            )

        logger.info(f"Fetched {len(items)} items from feed: {source.url}")
        return FetchResult(
            items=items,
            next_watermark=to_iso(latest) if latest else None,
        )

    def _parse_timestamp(self, entry: dict[str, Any]) -> datetime | None:
        """Published time, else updated time, else any parseable *date* field."""
        for field in ("published_parsed", "updated_parsed"):
            parsed = entry.get(field)
            if parsed:
                return datetime.fromtimestamp(calendar.timegm(parsed), tz=timezone.utc)

        for key, value in entry.items():
            if "date" in key.lower() and isinstance(value, str):
                try:
                    parsed_date = parsedate_to_datetime(value)
                except (TypeError, ValueError):
                    try:
                        parsed_date = datetime.fromisoformat(value.replace("Z", "+00:00"))
                    except ValueError:
                        continue
                if parsed_date.tzinfo is None:
                    parsed_date = parsed_date.replace(tzinfo=timezone.utc)
                return parsed_date

        return None

    def _extract_content(self, entry: dict[str, Any]) -> str | None:
        """First non-empty of content:encoded/content, description, summary."""
        candidates: list[str] = []
        for block in entry.get("content") or []:
            candidates.append(block.get("value", ""))
        candidates.append(entry.get("description") or "")
        candidates.append(entry.get("summary") or "")

        for candidate in candidates:
            if candidate and candidate.strip():
                text = strip_html(candidate)
                if text:
                    return text
        return None

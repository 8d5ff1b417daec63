"""
Base adapter interface and shared functionality for source adapters.

Each adapter implements ``fetch_items(source, watermark)`` and returns the
items newer than the watermark together with the advanced watermark. The
watermark is an opaque string only the adapter interprets; ``None`` as
``next_watermark`` means "keep the stored one".
"""

import hashlib
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from topic_tracker.config.topics import SourceKind
from topic_tracker.ingestion.http_client import HTTPClient, RetryConfig
from topic_tracker.storage.schemas import Source

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 10_000


@dataclass
class FetchedItem:
    """An item as returned by a source adapter, before deduplication."""

    title: str
    content: str = ""
    url: str | None = None
    published_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class FetchResult:
    items: list[FetchedItem] = field(default_factory=list)
    next_watermark: str | None = None


class SourceAdapter(ABC):
    """
    Abstract base class for source adapters.

    Subclasses must implement:
        - kind: SourceKind handled by the adapter
        - fetch_items(): fetch and transform items newer than the watermark

    Errors (including exhausted HTTP retries) propagate to the caller,
    which isolates failures per source.
    """

    def __init__(
        self,
        retry_config: RetryConfig | None = None,
        timeout: float = 30.0,
    ):
        self._retry_config = retry_config or RetryConfig()
        self._timeout = timeout

    @property
    @abstractmethod
    def kind(self) -> SourceKind:
        ...

    @property
    def name(self) -> str:
        return f"{self.kind.value}_adapter"

    def _http(self, timeout: float | None = None, retries: int | None = None) -> HTTPClient:
        """New HTTP client sharing the factory's retry configuration."""
        config = self._retry_config
        if retries is not None:
            config = RetryConfig(
                max_retries=retries,
                max_backoff_seconds=config.max_backoff_seconds,
                base_delay=config.base_delay,
                jitter_factor=config.jitter_factor,
            )
        return HTTPClient(config, timeout=timeout or self._timeout)

    @abstractmethod
    async def fetch_items(self, source: Source, watermark: str | None) -> FetchResult:
        """
        Fetch items newer than ``watermark``.

        Args:
            source: Persisted source row (url, meta)
            watermark: Stored cursor, or None when the source has none

        Returns:
            FetchResult with the new items and the advanced watermark
        """
        ...


def parse_watermark_time(watermark: str | None) -> datetime | None:
    """Parse an ISO-8601 watermark, treating naive values as UTC."""
    if not watermark:
        return None
    try:
        value = datetime.fromisoformat(watermark.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Ignoring unparseable watermark: {watermark!r}")
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def sanitize_content(content: str) -> str:
    """Collapse whitespace, trim and cap at MAX_CONTENT_LENGTH characters."""
    return re.sub(r"\s+", " ", content).strip()[:MAX_CONTENT_LENGTH]


def strip_html(html_content: str) -> str:
    """
    Extract clean text from HTML content.

    Args:
        html_content: Raw HTML string

    Returns:
        Text with tags removed and whitespace collapsed
    """
    if not html_content:
        return ""

    soup = BeautifulSoup(html_content, "html.parser")
    for element in soup(["script", "style", "noscript"]):
        element.decompose()

    text = soup.get_text(separator=" ")
    return re.sub(r"\s+", " ", text).strip()


def extract_domain(url: str) -> str:
    """Hostname of a URL, or ``"unknown"`` when it cannot be parsed."""
    try:
        hostname = urlparse(url).hostname
    except ValueError:
        return "unknown"
    return hostname or "unknown"


def stable_hash(value: str) -> str:
    """
    Full SHA256 hex digest of a string.

    Unlike Python's built-in hash(), this is deterministic across process
    restarts, so it can be stored and compared later.
    """
    return hashlib.sha256(value.encode("utf-8")).hexdigest()

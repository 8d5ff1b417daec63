"""Adapter selection by source kind."""

import logging

from topic_tracker.config.settings import get_settings
from topic_tracker.config.topics import SourceKind
from topic_tracker.ingestion.base_adapter import SourceAdapter
from topic_tracker.ingestion.change_detector_adapter import ChangeDetectorAdapter
from topic_tracker.ingestion.chat_channel_adapter import ChatChannelAdapter
from topic_tracker.ingestion.code_host_adapter import CodeHostAdapter
from topic_tracker.ingestion.feed_adapter import FeedAdapter
from topic_tracker.ingestion.http_client import RetryConfig

logger = logging.getLogger(__name__)


class UnsupportedSourceKindError(ValueError):
    """Raised for a source kind with no adapter."""

    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"Unsupported source kind: {kind}")


class AdapterFactory:
    """
    Builds one adapter per source kind, sharing a single retry policy.

    Adapters are created lazily and cached; they hold no per-source state.
    """

    def __init__(
        self,
        retry_config: RetryConfig | None = None,
        timeout: float | None = None,
        github_token: str | None = None,
        discord_bot_token: str | None = None,
    ):
        settings = get_settings()
        self._retry_config = retry_config or RetryConfig(
            max_retries=settings.max_http_retries,
            max_backoff_seconds=settings.max_backoff_seconds,
        )
        self._timeout = timeout or settings.http_timeout_seconds
        self._github_token = github_token or settings.github_token
        self._discord_bot_token = discord_bot_token or settings.discord_bot_token
        self._adapters: dict[SourceKind, SourceAdapter] = {}

    @staticmethod
    def supported_kinds() -> list[str]:
        return [kind.value for kind in SourceKind]

    def get(self, kind: SourceKind | str) -> SourceAdapter:
        """Adapter for a declared kind; raises UnsupportedSourceKindError otherwise."""
        try:
            kind = SourceKind(kind)
        except ValueError:
            raise UnsupportedSourceKindError(str(kind)) from None

        if kind not in self._adapters:
            self._adapters[kind] = self._create(kind)
        return self._adapters[kind]

    def _create(self, kind: SourceKind) -> SourceAdapter:
        common = {"retry_config": self._retry_config, "timeout": self._timeout}
        if kind is SourceKind.FEED:
            return FeedAdapter(**common)
        if kind is SourceKind.CODE_HOST:
            return CodeHostAdapter(token=self._github_token, **common)
        if kind is SourceKind.CHAT_CHANNEL:
            return ChatChannelAdapter(bot_token=self._discord_bot_token, **common)
        if kind is SourceKind.CHANGE_DETECTOR:
            return ChangeDetectorAdapter(**common)
        raise UnsupportedSourceKindError(kind.value)

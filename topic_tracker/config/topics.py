"""
Topic and global pipeline configuration.

Topics are declared as JSON files (one per topic) under ``TOPICS_DIR``;
pipeline-wide defaults live in ``GLOBAL_CONFIG_PATH``. Keys may be written
in camelCase (``lookbackDays``) or snake_case (``lookback_days``).

Example topic file::

    {
      "slug": "python-releases",
      "name": "Python Releases",
      "schedule": {"cron": "0 9 * * *"},
      "sources": [
        {"name": "cpython", "kind": "code-host",
         "url": "https://github.com/python/cpython", "meta": {"type": "releases"}}
      ],
      "channels": {"notifier": {"targets": ["#python-news"]}}
    }
"""

import logging
from enum import Enum
from pathlib import Path
from typing import Any

from croniter import croniter
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from topic_tracker.config.settings import get_settings

logger = logging.getLogger(__name__)

SLUG_PATTERN = r"^[a-z0-9-]+$"


class TopicConfigError(Exception):
    """Raised when topic or global configuration is missing or invalid."""


class SourceKind(str, Enum):
    """Closed set of source adapter kinds."""

    FEED = "feed"
    CODE_HOST = "code-host"
    CHAT_CHANNEL = "chat-channel"
    CHANGE_DETECTOR = "change-detector"


# Kind names used by older topic files
_LEGACY_KINDS = {
    "rss": SourceKind.FEED,
    "github": SourceKind.CODE_HOST,
    "discord": SourceKind.CHAT_CHANNEL,
    "content_monitor": SourceKind.CHANGE_DETECTOR,
}


class _ConfigModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class ScheduleConfig(_ConfigModel):
    """Cron trigger for a topic. Timezone falls back to the global timezone."""

    cron: str
    timezone: str | None = None

    @field_validator("cron")
    @classmethod
    def _validate_cron(cls, value: str) -> str:
        if not croniter.is_valid(value):
            raise ValueError(f"Invalid cron expression: {value!r}")
        return value


class SourceConfig(_ConfigModel):
    """One content origin within a topic."""

    name: str = Field(min_length=1)
    kind: SourceKind
    url: str = Field(min_length=1)
    enabled: bool = True
    meta: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _accept_type_key(cls, data: Any) -> Any:
        # Older files use "type" instead of "kind"
        if isinstance(data, dict) and "kind" not in data and "type" in data:
            data = {**data, "kind": data["type"]}
        return data

    @field_validator("kind", mode="before")
    @classmethod
    def _map_legacy_kind(cls, value: Any) -> Any:
        if isinstance(value, str) and value in _LEGACY_KINDS:
            return _LEGACY_KINDS[value]
        return value


class NotifierTargets(_ConfigModel):
    targets: list[str] = Field(default_factory=list)


class ChannelsConfig(_ConfigModel):
    """Notification targets for a topic."""

    notifier: NotifierTargets | None = None

    @model_validator(mode="before")
    @classmethod
    def _map_legacy_slack(cls, data: Any) -> Any:
        if isinstance(data, dict) and "notifier" not in data:
            slack = data.get("slack") or {}
            if slack.get("channels"):
                return {"notifier": {"targets": list(slack["channels"])}}
        return data


class TopicConfig(_ConfigModel):
    """A monitored subject and its sources."""

    slug: str = Field(pattern=SLUG_PATTERN)
    name: str = Field(min_length=1)
    enabled: bool = True
    assistant_id: str | None = None
    schedule: ScheduleConfig | None = None
    lookback_days: int | None = Field(default=None, ge=1)
    sources: list[SourceConfig] = Field(default_factory=list)
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)

    @field_validator("sources")
    @classmethod
    def _unique_source_names(cls, sources: list[SourceConfig]) -> list[SourceConfig]:
        names = [s.name for s in sources]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Duplicate source names: {sorted(duplicates)}")
        return sources

    def enabled_sources(self) -> list[SourceConfig]:
        return [s for s in self.sources if s.enabled]

    @property
    def notifier_targets(self) -> list[str]:
        if self.channels.notifier is None:
            return []
        return self.channels.notifier.targets


class SummarizerConfig(_ConfigModel):
    max_items_per_run: int = Field(default=60, ge=1)
    max_chars_per_item: int = Field(default=2000, ge=1)
    timeout_seconds: float = Field(default=120.0, gt=0)
    retry_attempts: int = Field(default=3, ge=0)
    poll_interval_seconds: float = Field(default=2.0, gt=0)


class NotifierConfig(_ConfigModel):
    default_channel: str = "#news-alerts"
    post_as_file_over: int = Field(default=4000, ge=1)
    retry_attempts: int = Field(default=3, ge=0)


class DeduplicationConfig(_ConfigModel):
    lookback_days: int = Field(default=30, ge=1)


class GlobalConfig(_ConfigModel):
    """Pipeline-wide defaults shared by all topics."""

    lookback_days: int = Field(default=7, ge=1)
    timezone: str | None = None
    default_schedule: ScheduleConfig | None = None
    summarizer: SummarizerConfig = Field(default_factory=SummarizerConfig)
    notifier: NotifierConfig = Field(default_factory=NotifierConfig)
    deduplication: DeduplicationConfig = Field(default_factory=DeduplicationConfig)

    @model_validator(mode="before")
    @classmethod
    def _map_legacy_sections(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            if "summarizer" not in data and "openai" in data:
                data["summarizer"] = data.pop("openai")
            if "notifier" not in data and "slack" in data:
                data["notifier"] = data.pop("slack")
        return data


class TopicCatalog:
    """
    In-memory view of the topic configuration files.

    Usage:
        catalog = TopicCatalog()
        catalog.load()
        topic = catalog.get("python-releases")
    """

    def __init__(
        self,
        topics_dir: str | Path | None = None,
        global_config_path: str | Path | None = None,
    ):
        settings = get_settings()
        self._topics_dir = Path(topics_dir or settings.topics_dir)
        self._global_path = Path(global_config_path or settings.global_config_path)
        self._default_timezone = settings.timezone
        self._topics: dict[str, TopicConfig] = {}
        self._global = GlobalConfig()
        self._loaded = False

    @property
    def global_config(self) -> GlobalConfig:
        self._ensure_loaded()
        return self._global

    @property
    def timezone(self) -> str:
        """Effective default timezone for schedules."""
        return self.global_config.timezone or self._default_timezone

    def load(self) -> None:
        """Read all configuration files, replacing the current view."""
        global_config = self._load_global()
        topics: dict[str, TopicConfig] = {}

        if self._topics_dir.is_dir():
            for path in sorted(self._topics_dir.glob("*.json")):
                topic = self._load_topic(path)
                if topic.slug in topics:
                    raise TopicConfigError(
                        f"Duplicate topic slug {topic.slug!r} in {path}"
                    )
                topics[topic.slug] = topic
        else:
            logger.warning(f"Topics directory not found: {self._topics_dir}")

        self._global = global_config
        self._topics = topics
        self._loaded = True
        logger.info(f"Loaded {len(topics)} topic configurations")

    def reload(self) -> None:
        self.load()

    def get(self, slug: str) -> TopicConfig | None:
        self._ensure_loaded()
        return self._topics.get(slug)

    def all(self) -> list[TopicConfig]:
        self._ensure_loaded()
        return list(self._topics.values())

    def enabled(self) -> list[TopicConfig]:
        return [t for t in self.all() if t.enabled]

    def lookback_days_for(self, topic: TopicConfig) -> int:
        return topic.lookback_days or self.global_config.lookback_days

    def schedule_for(self, topic: TopicConfig) -> ScheduleConfig | None:
        """Topic schedule, else the global default, with timezone resolved."""
        schedule = topic.schedule or self.global_config.default_schedule
        if schedule is None:
            return None
        return schedule.model_copy(
            update={"timezone": schedule.timezone or self.timezone}
        )

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def _load_global(self) -> GlobalConfig:
        if not self._global_path.is_file():
            logger.info(f"No global config at {self._global_path}, using defaults")
            return GlobalConfig()
        try:
            return GlobalConfig.model_validate_json(self._global_path.read_text())
        except ValidationError as e:
            raise TopicConfigError(f"Invalid global config {self._global_path}: {e}") from e

    def _load_topic(self, path: Path) -> TopicConfig:
        try:
            return TopicConfig.model_validate_json(path.read_text())
        except ValidationError as e:
            raise TopicConfigError(f"Invalid topic config {path}: {e}") from e

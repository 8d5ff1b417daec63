"""Data models for persisted topics, sources, items, runs and tasks."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskKind(str, Enum):
    PROCESS = "process"
    REVERT = "revert"
    CLEAN = "clean"


WATERMARK_KIND_TIMESTAMP = "timestamp"


@dataclass
class Topic:
    """A monitored subject, mirrored from its JSON configuration."""

    id: str
    slug: str
    name: str
    enabled: bool = True
    assistant_id: str | None = None
    lookback_days: int | None = None
    config: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Source:
    id: str
    topic_id: str
    name: str
    kind: str
    url: str
    enabled: bool = True
    meta: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Watermark:
    """Opaque per-source fetch cursor. Only the adapter interprets ``value``."""

    id: str
    source_id: str
    value: str
    kind: str = WATERMARK_KIND_TIMESTAMP
    updated_at: datetime | None = None


@dataclass
class Item:
    """A fetched content unit after deduplication.

    ``content_hash`` is the fingerprint; (source_id, content_hash) is unique.
    """

    topic_id: str
    source_id: str
    title: str
    content: str
    url: str | None
    published_at: datetime | None
    content_hash: str
    similarity_hash: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str | None = None
    created_at: datetime | None = None


@dataclass
class Run:
    id: str
    topic_id: str
    status: RunStatus
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    topic_slug: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "topic_id": self.topic_id,
            "topic_slug": self.topic_slug,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class Task:
    """An audited request for a process, revert or clean operation."""

    id: str
    kind: TaskKind
    status: TaskStatus
    params: dict[str, Any] = field(default_factory=dict)
    topic_id: str | None = None
    topic_slug: str | None = None
    requester: str | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "status": self.status.value,
            "params": self.params,
            "topic_id": self.topic_id,
            "topic_slug": self.topic_slug,
            "requester": self.requester,
            "result": self.result,
            "error": self.error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

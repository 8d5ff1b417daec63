"""
Request and response models for the topic API.
"""

from typing import Any

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Response model for errors."""

    detail: str = Field(
        ...,
        description="Error message",
    )
    error_type: str = Field(
        default="error",
        description="Error type",
    )


# Trigger models


class ProcessRequest(BaseModel):
    force: bool = Field(
        default=False,
        description="Ignore watermarks and deduplication, and bypass the duplicate-job guard",
    )


class RevertRequest(BaseModel):
    period: str = Field(
        ...,
        description="Window to revert, e.g. 1d, 12h, 30m",
    )


class CleanRequest(BaseModel):
    confirm: bool = Field(
        default=False,
        description="Must be true; clean deletes every stored row of the topic",
    )


class TriggerResponse(BaseModel):
    """Response model for an accepted topic operation."""

    task_id: str = Field(..., description="Task ledger id")
    job_id: str = Field(..., description="Work queue job id")
    status: str = Field(..., description="Task status at submission")


# Topic models


class TopicStats(BaseModel):
    slug: str
    name: str
    enabled: bool
    items_count: int = 0
    runs_count: int = 0
    last_run: str | None = None
    last_run_status: str | None = None


class TopicsResponse(BaseModel):
    topics: list[TopicStats] = Field(..., description="Per-topic statistics")
    total: int = Field(..., description="Number of topics")


class TopicDetail(TopicStats):
    """Statistics plus the loaded configuration of one topic."""

    next_run: str | None = Field(default=None, description="Next scheduled run, if scheduled")
    config: dict[str, Any] = Field(default_factory=dict, description="Topic configuration")


# Task models


class TaskItem(BaseModel):
    """Task ledger entry."""

    id: str
    kind: str
    status: str
    params: dict[str, Any] = Field(default_factory=dict)
    topic_id: str | None = None
    topic_slug: str | None = None
    requester: str | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    created_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None


class TasksResponse(BaseModel):
    tasks: list[TaskItem] = Field(..., description="Tasks, newest first")
    total: int = Field(..., description="Number of tasks returned")


class TaskStatsResponse(BaseModel):
    total: int = Field(..., description="Total tasks in the ledger")
    by_status: dict[str, int] = Field(default_factory=dict)
    by_kind: dict[str, int] = Field(default_factory=dict)


# Run models


class RunItem(BaseModel):
    id: str
    topic_id: str
    topic_slug: str | None = None
    status: str
    started_at: str | None = None
    completed_at: str | None = None
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: str | None = None


class RunsResponse(BaseModel):
    runs: list[RunItem] = Field(..., description="Runs, newest first")
    total: int = Field(..., description="Total runs matching the filters")
    has_more: bool = Field(default=False, description="Whether more pages exist")


class RunSummary(BaseModel):
    run_id: str
    topic_slug: str | None = None
    summary: str = Field(..., description="Digest produced by the summarizer")
    created_at: str | None = Field(default=None, description="When the run completed")


# Health models


class ComponentHealth(BaseModel):
    """Health status of a single infrastructure component."""

    status: str = Field(..., description="healthy, unhealthy or disabled")
    latency_ms: float | None = Field(default=None, description="Check latency in milliseconds")
    details: dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Response model for health check."""

    status: str = Field(
        ...,
        description="Overall service status: healthy, degraded, or unhealthy",
    )
    components: dict[str, ComponentHealth] = Field(default_factory=dict)
    topics_count: int = Field(default=0, description="Configured topics")
    enabled_topics: int = Field(default=0, description="Enabled topics")
    queue: dict[str, int] = Field(default_factory=dict, description="Job counts by state")
    active_locks: list[dict[str, Any]] = Field(default_factory=list)

"""Topic pipeline services: orchestration, job handling and triggers."""

from topic_tracker.services.errors import (
    ConfirmationRequiredError,
    InvalidPeriodError,
    TopicDisabledError,
    TopicNotFoundError,
    is_retryable_error,
)
from topic_tracker.services.job_processor import TopicJobProcessor
from topic_tracker.services.orchestrator import (
    CleanResult,
    ProcessResult,
    RevertResult,
    TopicOrchestrator,
    parse_period,
)
from topic_tracker.services.triggers import TopicTriggerService

__all__ = [
    "CleanResult",
    "ConfirmationRequiredError",
    "InvalidPeriodError",
    "ProcessResult",
    "RevertResult",
    "TopicDisabledError",
    "TopicJobProcessor",
    "TopicNotFoundError",
    "TopicOrchestrator",
    "TopicTriggerService",
    "is_retryable_error",
    "parse_period",
]

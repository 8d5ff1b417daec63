"""
Error taxonomy of the topic pipeline.

Configuration errors (``TopicConfigError`` and subclasses) describe a
request that can never succeed as given; they surface to the caller and
are never retried. Everything else that escapes a job is retried by the
queue up to the job kind's attempt cap.
"""

from topic_tracker.config.topics import TopicConfigError
from topic_tracker.ingestion.factory import UnsupportedSourceKindError


class TopicNotFoundError(TopicConfigError):
    def __init__(self, slug: str, detail: str = "Topic configuration not found"):
        self.slug = slug
        super().__init__(f"{detail}: {slug}")


class TopicDisabledError(TopicConfigError):
    def __init__(self, slug: str):
        self.slug = slug
        super().__init__(f"Topic is disabled: {slug}")


class InvalidPeriodError(TopicConfigError):
    def __init__(self, period: str):
        self.period = period
        super().__init__(
            f"Invalid period format: {period}. Expected format: number followed by d/h/m"
        )


class ConfirmationRequiredError(TopicConfigError):
    def __init__(self, slug: str):
        self.slug = slug
        super().__init__(f"Cleaning topic {slug} deletes all of its data; confirmation is required")


NON_RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    TopicConfigError,
    UnsupportedSourceKindError,
)


def is_retryable_error(exc: BaseException) -> bool:
    """Whether a job that raised ``exc`` should be attempted again."""
    return not isinstance(exc, NON_RETRYABLE_ERRORS)

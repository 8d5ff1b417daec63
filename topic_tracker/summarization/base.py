"""Summarizer port: turns a batch of items into a digest text."""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol


class SummarizerError(Exception):
    """Raised when a summary could not be produced."""


class SummarizerTimeoutError(SummarizerError):
    """Raised when the remote run did not finish within the timeout."""


class SummarizableItem(Protocol):
    title: str
    content: str | None
    url: str | None
    published_at: datetime | None


@dataclass
class SummaryResult:
    text: str
    prompt: str


class Summarizer(ABC):
    """Produces a summary for a topic's new items."""

    @abstractmethod
    async def summarize(
        self,
        items: Sequence[SummarizableItem],
        assistant_ref: str | None = None,
    ) -> SummaryResult:
        """
        Summarize ``items``.

        Args:
            items: Items already limited to the per-run maximum.
            assistant_ref: Assistant to use, falling back to the default.

        Raises:
            SummarizerError: on any failure, after retries.
        """
        ...

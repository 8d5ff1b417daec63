"""Notifier port: delivers a topic summary to one or more channels."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


class NotifierError(Exception):
    """Raised by a notifier when a single delivery fails."""


@dataclass
class NotificationResult:
    """Outcome of posting one summary to its channels.

    ``success`` is True only when every channel received the summary;
    ``errors`` holds one entry per failed channel.
    """

    message_id: str | None = None
    success: bool = True
    errors: list[str] = field(default_factory=list)


class Notifier(ABC):
    """Delivers summaries to notification channels."""

    @abstractmethod
    async def post(
        self,
        topic_name: str,
        text: str,
        channels: list[str],
        metadata: dict[str, Any] | None = None,
    ) -> NotificationResult:
        """Post ``text`` to each of ``channels``; a failed channel does not stop the others."""
        ...

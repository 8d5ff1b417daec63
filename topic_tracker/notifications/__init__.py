"""Notifier port and the Slack implementation."""

from topic_tracker.notifications.base import NotificationResult, Notifier, NotifierError
from topic_tracker.notifications.slack import SlackNotifier, split_text_for_blocks

__all__ = [
    "NotificationResult",
    "Notifier",
    "NotifierError",
    "SlackNotifier",
    "split_text_for_blocks",
]

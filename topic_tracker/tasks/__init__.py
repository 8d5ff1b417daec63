"""Task ledger for requested topic operations."""

from topic_tracker.tasks.ledger import TaskLedger

__all__ = ["TaskLedger"]

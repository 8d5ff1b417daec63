"""Pipeline event fan-out to WebSocket observers."""

from topic_tracker.events.broadcaster import (
    EventBroadcaster,
    EventPublisher,
    EventType,
    NullPublisher,
)

__all__ = ["EventBroadcaster", "EventPublisher", "EventType", "NullPublisher"]

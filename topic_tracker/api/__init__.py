"""HTTP API for triggering topic operations and observing runs."""

from topic_tracker.api.app import create_app

__all__ = ["create_app"]

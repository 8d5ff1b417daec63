"""Storage layer for topics, sources, items, runs and tasks."""

from topic_tracker.storage.database import APPLICATION_NAME, Database
from topic_tracker.storage.repository import (
    ItemRepository,
    RunRepository,
    SourceRepository,
    TaskRepository,
    TopicRepository,
    WatermarkRepository,
    create_tables,
)

__all__ = [
    "APPLICATION_NAME",
    "Database",
    "create_tables",
    "TopicRepository",
    "SourceRepository",
    "WatermarkRepository",
    "ItemRepository",
    "RunRepository",
    "TaskRepository",
]

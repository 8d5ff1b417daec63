"""Redis Streams work queue for topic jobs and the worker pool that drains it."""

from topic_tracker.queues.backoff import ExponentialBackoff, retry_with_backoff
from topic_tracker.queues.base import BaseRedisQueue, StreamConfig
from topic_tracker.queues.config import JobPolicy, QueueConfig
from topic_tracker.queues.work_queue import DuplicateJobError, JobState, TopicJob, TopicJobQueue
from topic_tracker.queues.worker import JobHandler, TopicWorker

__all__ = [
    "BaseRedisQueue",
    "DuplicateJobError",
    "ExponentialBackoff",
    "JobHandler",
    "JobPolicy",
    "JobState",
    "QueueConfig",
    "StreamConfig",
    "TopicJob",
    "TopicJobQueue",
    "TopicWorker",
    "retry_with_backoff",
]

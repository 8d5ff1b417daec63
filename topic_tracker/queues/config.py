"""
Queue configuration for the topic job stream.

Covers reclaim of orphaned stream messages, job retry policy per job kind
and bookkeeping limits for job records.
"""

from dataclasses import dataclass, field

from topic_tracker.storage.schemas import TaskKind


@dataclass(frozen=True)
class JobPolicy:
    """
    Retry policy for one job kind.

    Attributes:
        attempts: Total attempts including the first one.
        backoff_base_seconds: Delay before attempt n+1 is base * 2**(n-1).
    """

    attempts: int
    backoff_base_seconds: float = 1.0

    def backoff(self, attempt: int) -> float:
        return self.backoff_base_seconds * (2 ** (attempt - 1))


DEFAULT_JOB_POLICIES: dict[TaskKind, JobPolicy] = {
    TaskKind.PROCESS: JobPolicy(attempts=3, backoff_base_seconds=2.0),
    TaskKind.REVERT: JobPolicy(attempts=2, backoff_base_seconds=1.0),
    TaskKind.CLEAN: JobPolicy(attempts=1),
}


@dataclass
class QueueConfig:
    """
    Configuration for the topic job queue.

    Attributes:
        idle_timeout_ms: Time after which an unacknowledged message is
            considered orphaned and reclaimed by another consumer. A
            pipeline run can legitimately take minutes, so this is long.

        max_delivery_attempts: Deliveries of one stream message (crash
            recoveries, not job retries) before it is dead-lettered.

        reclaim_batch_size: Messages reclaimed per XAUTOCLAIM call.

        inflight_ttl_seconds: Expiry of the per-topic duplicate guard, so
            a lost worker cannot block a topic forever.

        failed_health_threshold: Failed job records at or above which the
            queue reports unhealthy.

        promote_interval_seconds: How often workers move due delayed jobs
            back onto the stream.
    """

    idle_timeout_ms: int = 900_000  # 15 minutes
    max_delivery_attempts: int = 3
    reclaim_batch_size: int = 10

    inflight_ttl_seconds: int = 6 * 3600
    failed_health_threshold: int = 100
    promote_interval_seconds: float = 1.0
    clean_grace_seconds: int = 86_400

    job_policies: dict[TaskKind, JobPolicy] = field(
        default_factory=lambda: dict(DEFAULT_JOB_POLICIES)
    )

    # Backoff settings for consume() error recovery
    backoff_base_delay: float = 1.0
    backoff_max_delay: float = 60.0

    def policy_for(self, kind: TaskKind) -> JobPolicy:
        return self.job_policies.get(kind, JobPolicy(attempts=1))

"""
Durable queue of topic jobs (process, revert, clean).

Jobs travel on a Redis stream; each job also has a hash record holding its
state, attempts, error and result, indexed by per-state sorted sets for
stats and cleanup. Failed attempts wait in a delayed set until
``promote_delayed()`` puts them back on the stream.

Every process job records itself in an in-flight key per topic. A
non-forced request claims the key with SET NX and is rejected with
DuplicateJobError while the holder is still waiting, delayed or active; a
forced request takes the key over unconditionally.

Jobs that end without reaching the handler (dead-lettered on redelivery,
unparseable, or cancelled) are reported through ``on_abandoned`` so the
caller can fail the ledger task.
"""

import json
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from topic_tracker.config.settings import get_settings
from topic_tracker.observability.metrics import get_metrics
from topic_tracker.observability.tracing import inject_trace_context, trace_fields_from
from topic_tracker.queues.base import BaseRedisQueue, StreamConfig
from topic_tracker.queues.config import QueueConfig
from topic_tracker.storage.schemas import TaskKind

logger = logging.getLogger(__name__)

# (task_id, reason)
AbandonCallback = Callable[[str, str], Awaitable[Any]]


class JobState:
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    ALL = (WAITING, DELAYED, ACTIVE, COMPLETED, FAILED, CANCELLED)
    IN_FLIGHT = (WAITING, DELAYED, ACTIVE)
    FINISHED = (COMPLETED, FAILED, CANCELLED)


class DuplicateJobError(Exception):
    """A job of the same kind for the same topic is already in flight."""

    def __init__(self, kind: str, topic_slug: str, existing_job_id: str | None = None):
        self.kind = kind
        self.topic_slug = topic_slug
        self.existing_job_id = existing_job_id
        super().__init__(
            f"A {kind} job for topic {topic_slug!r} is already queued or running"
            + (f" (job {existing_job_id})" if existing_job_id else "")
        )


@dataclass
class TopicJob:
    """A job read from the stream."""

    message_id: str
    job_id: str
    kind: TaskKind
    topic_slug: str
    params: dict[str, Any] = field(default_factory=dict)
    task_id: str | None = None
    force: bool = False
    attempt: int = 1
    max_attempts: int = 1
    retry_count: int = 0
    trace_fields: dict[str, str] = field(default_factory=dict)

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt >= self.max_attempts


class TopicJobQueue(BaseRedisQueue[TopicJob]):
    """
    Redis-backed work queue for topic jobs.

    Usage:
        async with TopicJobQueue() as queue:
            job_id = await queue.enqueue(TaskKind.PROCESS, "python-releases", task_id=task.id)

        # worker side
        async for job in queue.consume(count=1):
            if await queue.start(job):
                ...
                await queue.complete(job, result)
    """

    def __init__(
        self,
        redis_url: str | None = None,
        queue_config: QueueConfig | None = None,
        stream_name: str | None = None,
        consumer_group: str | None = None,
        on_abandoned: AbandonCallback | None = None,
    ):
        settings = get_settings()
        self._stream_name = stream_name or settings.jobs_stream_name
        super().__init__(
            redis_url=redis_url or str(settings.redis_url),
            stream=StreamConfig(
                stream_name=self._stream_name,
                consumer_group=consumer_group or settings.jobs_consumer_group,
                consumer_prefix="topic_worker",
                max_stream_length=settings.jobs_max_stream_length,
            ),
            queue_config=queue_config or QueueConfig(),
        )
        self.on_abandoned = on_abandoned

    # -- BaseRedisQueue hooks -------------------------------------------

    def _parse_job(
        self, message_id: str, fields: dict[str, str], retry_count: int
    ) -> TopicJob:
        kind = TaskKind(fields["kind"])
        return TopicJob(
            message_id=message_id,
            job_id=fields["job_id"],
            kind=kind,
            topic_slug=fields["topic_slug"],
            params=json.loads(fields.get("params") or "{}"),
            task_id=fields.get("task_id") or None,
            force=fields.get("force") == "1",
            attempt=int(fields.get("attempt", "1")),
            max_attempts=self._queue_config.policy_for(kind).attempts,
            trace_fields=trace_fields_from(fields),
            retry_count=retry_count,
        )

    async def _on_dead_letter(self, fields: dict[str, str], reason: str) -> None:
        job_id = fields.get("job_id")
        if not job_id:
            return
        await self._set_state(job_id, JobState.FAILED, error=reason)
        await self._release_guard(fields.get("kind", ""), fields.get("topic_slug", ""), job_id)
        await self._abandon(fields.get("task_id", ""), f"Job dead-lettered: {reason}")

    async def _abandon(self, task_id: str | None, reason: str) -> None:
        if not task_id or self.on_abandoned is None:
            return
        try:
            await self.on_abandoned(task_id, reason)
        except Exception as e:
            logger.error(f"Failed to report abandoned task {task_id}: {e}")

    # -- Keys -------------------------------------------------------------

    def _job_key(self, job_id: str) -> str:
        return f"{self._stream_name}:job:{job_id}"

    def _state_key(self, state: str) -> str:
        return f"{self._stream_name}:state:{state}"

    def _inflight_key(self, kind: str, topic_slug: str) -> str:
        return f"{self._stream_name}:inflight:{kind}:{topic_slug}"

    @property
    def _delayed_key(self) -> str:
        return f"{self._stream_name}:delayed"

    @property
    def _paused_key(self) -> str:
        return f"{self._stream_name}:paused"

    # -- Producer side ----------------------------------------------------

    async def enqueue(
        self,
        kind: TaskKind | str,
        topic_slug: str,
        params: dict[str, Any] | None = None,
        task_id: str | None = None,
        force: bool = False,
    ) -> str:
        """
        Add a job to the stream and return its id.

        Raises:
            DuplicateJobError: a non-forced process job for the topic is
                already waiting, delayed or active.
        """
        kind = TaskKind(kind)
        job_id = uuid.uuid4().hex

        if kind is TaskKind.PROCESS:
            await self._claim_guard(kind.value, topic_slug, job_id, force=force)

        now = time.time()
        fields = {
            "job_id": job_id,
            "kind": kind.value,
            "topic_slug": topic_slug,
            "params": json.dumps(params or {}),
            "task_id": task_id or "",
            "force": "1" if force else "0",
            "attempt": "1",
            **inject_trace_context(),
        }

        await self.redis.hset(
            self._job_key(job_id),
            mapping={
                **fields,
                "state": JobState.WAITING,
                "attempts": "0",
                "max_attempts": str(self._queue_config.policy_for(kind).attempts),
                "error": "",
                "result": "",
                "created_at": str(now),
                "updated_at": str(now),
            },
        )
        await self.redis.zadd(self._state_key(JobState.WAITING), {job_id: now})
        await self._add_to_stream(fields)

        logger.info(f"Enqueued {kind.value} job {job_id} for topic {topic_slug} (force={force})")
        return job_id

    async def _add_to_stream(self, fields: dict[str, str]) -> str:
        return await self.redis.xadd(
            self.stream_config.stream_name,
            fields,
            maxlen=self.stream_config.max_stream_length,
            approximate=True,
        )

    async def _claim_guard(
        self, kind: str, topic_slug: str, job_id: str, force: bool = False
    ) -> None:
        key = self._inflight_key(kind, topic_slug)
        ttl = self._queue_config.inflight_ttl_seconds

        if force:
            await self.redis.set(key, job_id, ex=ttl)
            return
        if await self.redis.set(key, job_id, nx=True, ex=ttl):
            return

        holder = await self.redis.get(key)
        if holder:
            state = await self.redis.hget(self._job_key(holder), "state")
            if state in JobState.IN_FLIGHT:
                get_metrics().record_job(kind, "duplicate")
                raise DuplicateJobError(kind, topic_slug, holder)

        # Stale guard left by a finished or vanished job
        logger.warning(f"Replacing stale in-flight guard for {kind}:{topic_slug} (held by {holder})")
        await self.redis.set(key, job_id, ex=ttl)

    async def _release_guard(self, kind: str, topic_slug: str, job_id: str) -> None:
        key = self._inflight_key(kind, topic_slug)
        if await self.redis.get(key) == job_id:
            await self.redis.delete(key)

    async def _set_state(self, job_id: str, state: str, **extra: str) -> None:
        now = time.time()
        await self.redis.hset(
            self._job_key(job_id),
            mapping={"state": state, "updated_at": str(now), **extra},
        )
        for other in JobState.ALL:
            if other != state:
                await self.redis.zrem(self._state_key(other), job_id)
        await self.redis.zadd(self._state_key(state), {job_id: now})

    # -- Consumer side ----------------------------------------------------

    async def start(self, job: TopicJob) -> bool:
        """
        Mark a consumed job active.

        Returns False (and acknowledges the message) when the job was
        cancelled while waiting.
        """
        state = await self.redis.hget(self._job_key(job.job_id), "state")
        if state == JobState.CANCELLED:
            logger.info(f"Skipping cancelled job {job.job_id}")
            await self.ack(job.message_id)
            await self._abandon(job.task_id, "Job cancelled before it started")
            return False

        await self._set_state(job.job_id, JobState.ACTIVE, attempts=str(job.attempt))
        return True

    async def complete(self, job: TopicJob, result: dict[str, Any] | None = None) -> None:
        await self.ack(job.message_id)
        await self._set_state(
            job.job_id,
            JobState.COMPLETED,
            result=json.dumps(result or {}, default=str),
            error="",
        )
        await self._release_guard(job.kind.value, job.topic_slug, job.job_id)
        get_metrics().record_job(job.kind.value, "completed")
        logger.info(f"Job {job.job_id} completed ({job.kind.value} {job.topic_slug})")

    async def fail(self, job: TopicJob, error: str, retryable: bool = True) -> bool:
        """
        Record a failed attempt.

        Returns True when the job was scheduled for another attempt,
        False when it failed terminally and was dead-lettered.
        """
        policy = self._queue_config.policy_for(job.kind)
        metrics = get_metrics()

        if retryable and job.attempt < policy.attempts:
            delay = policy.backoff(job.attempt)
            await self._set_state(job.job_id, JobState.DELAYED, error=error)
            await self.redis.zadd(self._delayed_key, {job.job_id: time.time() + delay})
            await self.ack(job.message_id)
            metrics.record_job(job.kind.value, "retried")
            logger.warning(
                f"Job {job.job_id} attempt {job.attempt}/{policy.attempts} failed, "
                f"retrying in {delay:.1f}s: {error}"
            )
            return True

        await self._set_state(job.job_id, JobState.FAILED, error=error)
        await self._release_guard(job.kind.value, job.topic_slug, job.job_id)
        fields = await self.redis.hgetall(self._job_key(job.job_id))
        await self._move_to_dlq(job.message_id, fields or {"job_id": job.job_id}, error)
        await self.ack(job.message_id)
        metrics.record_job(job.kind.value, "failed")
        logger.error(
            f"Job {job.job_id} failed after {job.attempt} attempt(s): {error}"
        )
        return False

    async def promote_delayed(self) -> int:
        """Move due delayed jobs back onto the stream. Returns the count moved."""
        due = await self.redis.zrangebyscore(self._delayed_key, 0, time.time())
        promoted = 0

        for job_id in due:
            # Only the worker whose ZREM succeeds promotes the job
            if not await self.redis.zrem(self._delayed_key, job_id):
                continue

            record = await self.redis.hgetall(self._job_key(job_id))
            if not record or record.get("state") != JobState.DELAYED:
                continue

            next_attempt = int(record.get("attempts") or "1") + 1
            fields = {
                "job_id": job_id,
                "kind": record["kind"],
                "topic_slug": record["topic_slug"],
                "params": record.get("params", "{}"),
                "task_id": record.get("task_id", ""),
                "force": record.get("force", "0"),
                "attempt": str(next_attempt),
                **trace_fields_from(record),
            }

            await self._set_state(job_id, JobState.WAITING)
            await self._add_to_stream(fields)
            promoted += 1
            logger.info(f"Promoted delayed job {job_id} (attempt {next_attempt})")

        return promoted

    # -- Management -------------------------------------------------------

    async def get_job(self, job_id: str) -> dict[str, Any] | None:
        record = await self.redis.hgetall(self._job_key(job_id))
        if not record:
            return None
        return {
            "id": job_id,
            "kind": record.get("kind"),
            "topic_slug": record.get("topic_slug"),
            "task_id": record.get("task_id") or None,
            "state": record.get("state"),
            "attempts": int(record.get("attempts") or 0),
            "max_attempts": int(record.get("max_attempts") or 1),
            "force": record.get("force") == "1",
            "params": json.loads(record.get("params") or "{}"),
            "error": record.get("error") or None,
            "result": json.loads(record["result"]) if record.get("result") else None,
            "created_at": float(record["created_at"]) if record.get("created_at") else None,
            "updated_at": float(record["updated_at"]) if record.get("updated_at") else None,
        }

    async def cancel_job(self, job_id: str) -> bool:
        """Cancel a waiting or delayed job. Returns False for any other state."""
        record = await self.redis.hgetall(self._job_key(job_id))
        if not record or record.get("state") not in (JobState.WAITING, JobState.DELAYED):
            return False

        await self.redis.zrem(self._delayed_key, job_id)
        await self._set_state(job_id, JobState.CANCELLED)
        await self._release_guard(record["kind"], record["topic_slug"], job_id)
        await self._abandon(record.get("task_id"), "Job cancelled")
        logger.info(f"Cancelled job {job_id}")
        return True

    async def pause(self) -> None:
        await self.redis.set(self._paused_key, "1")
        logger.info("Queue paused")

    async def resume(self) -> None:
        await self.redis.delete(self._paused_key)
        logger.info("Queue resumed")

    async def is_paused(self) -> bool:
        return bool(await self.redis.exists(self._paused_key))

    async def clean(self, grace_seconds: int | None = None) -> int:
        """Drop finished job records older than the grace period."""
        grace = self._queue_config.clean_grace_seconds if grace_seconds is None else grace_seconds
        cutoff = time.time() - grace
        removed = 0

        for state in JobState.FINISHED:
            key = self._state_key(state)
            job_ids = await self.redis.zrangebyscore(key, 0, cutoff)
            for job_id in job_ids:
                await self.redis.delete(self._job_key(job_id))
                await self.redis.zrem(key, job_id)
                removed += 1

        logger.info(f"Cleaned {removed} finished job records older than {grace}s")
        return removed

    async def stats(self) -> dict[str, int]:
        counts = {}
        for state in JobState.ALL:
            counts[state] = await self.redis.zcard(self._state_key(state))
        get_metrics().set_queue_depth(counts)
        return counts

    async def is_healthy(self) -> bool:
        if not await self.health_check():
            return False
        failed = await self.redis.zcard(self._state_key(JobState.FAILED))
        return failed < self._queue_config.failed_health_threshold

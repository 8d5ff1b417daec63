"""
Redis Streams plumbing shared by the job queue.

A message delivered to a consumer that dies before acknowledging it stays
pending; after ``idle_timeout_ms`` another consumer claims it (XAUTOCLAIM).
Messages delivered more than ``max_delivery_attempts`` times, and messages
that cannot be parsed, are moved to the dead letter stream and the
subclass is told through ``_on_dead_letter``.
"""

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from types import TracebackType
from typing import Generic, TypeVar

import redis.asyncio as redis

from topic_tracker.observability.metrics import get_metrics
from topic_tracker.queues.config import QueueConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

DLQ_MAX_LENGTH = 10_000


@dataclass(frozen=True)
class StreamConfig:
    """Names and limits of one Redis stream and its consumer group."""

    stream_name: str
    consumer_group: str
    consumer_prefix: str = "consumer"
    max_stream_length: int = 10_000

    @property
    def dlq_stream_name(self) -> str:
        return f"{self.stream_name}:dlq"


class BaseRedisQueue(ABC, Generic[T]):
    """
    Redis Streams queue with at-least-once delivery.

    Subclasses turn message fields into jobs with ``_parse_job`` and may
    override ``_on_dead_letter`` to update their own bookkeeping.
    """

    def __init__(
        self,
        redis_url: str,
        stream: StreamConfig,
        queue_config: QueueConfig | None = None,
    ):
        self._redis_url = redis_url
        self._stream = stream
        self._queue_config = queue_config or QueueConfig()
        self._redis: redis.Redis | None = None
        self._consumer_name: str | None = None

    @abstractmethod
    def _parse_job(self, message_id: str, fields: dict[str, str], retry_count: int) -> T:
        """Build a job; ``retry_count`` is the number of earlier deliveries."""

    async def _on_dead_letter(self, fields: dict[str, str], reason: str) -> None:
        return None

    async def connect(self) -> None:
        """Open the Redis connection and ensure the stream and group exist."""
        self._redis = redis.from_url(self._redis_url, encoding="utf-8", decode_responses=True)
        self._consumer_name = f"{self._stream.consumer_prefix}_{uuid.uuid4().hex[:8]}"

        try:
            await self._redis.xgroup_create(
                name=self._stream.stream_name,
                groupname=self._stream.consumer_group,
                id="0",
                mkstream=True,
            )
            logger.info(
                f"Created consumer group '{self._stream.consumer_group}' "
                f"on '{self._stream.stream_name}'"
            )
        except redis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

        logger.info(f"Queue connected: stream={self._stream.stream_name} consumer={self._consumer_name}")

    async def close(self) -> None:
        if self._redis is None:
            return
        await self._redis.aclose()
        self._redis = None
        logger.info(f"Queue closed: stream={self._stream.stream_name}")

    async def __aenter__(self) -> "BaseRedisQueue[T]":
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def redis(self) -> redis.Redis:
        if self._redis is None:
            raise RuntimeError("Not connected to Redis. Call connect() first.")
        return self._redis

    @property
    def stream_config(self) -> StreamConfig:
        return self._stream

    @property
    def queue_config(self) -> QueueConfig:
        return self._queue_config

    async def consume(self, count: int = 1, block_ms: int = 5000) -> AsyncIterator[T]:
        """
        Yield jobs until cancelled.

        Each round first reclaims idle pending messages, then blocks on
        XREADGROUP for new ones.
        """
        if self._consumer_name is None:
            raise RuntimeError("Not connected. Call connect() first.")

        while True:
            try:
                async for job in self._reclaim_pending(count):
                    yield job
                async for job in self._read_new(count, block_ms):
                    yield job
            except asyncio.CancelledError:
                logger.info("Consumer cancelled, stopping")
                break
            except Exception as e:
                logger.error(f"Error consuming from {self._stream.stream_name}: {e}")
                await asyncio.sleep(self._queue_config.backoff_base_delay)

    async def _read_new(self, count: int, block_ms: int) -> AsyncIterator[T]:
        response = await self.redis.xreadgroup(
            groupname=self._stream.consumer_group,
            consumername=self._consumer_name,
            streams={self._stream.stream_name: ">"},
            count=count,
            block=block_ms,
        )
        for _stream, entries in response or []:
            for msg_id, fields in entries:
                job = await self._decode(msg_id, fields, retry_count=0)
                if job is not None:
                    yield job

    async def _reclaim_pending(self, count: int) -> AsyncIterator[T]:
        queue_name = self._stream.stream_name
        try:
            # [next_start_id, [(msg_id, fields), ...], [deleted_ids]]
            result = await self.redis.xautoclaim(
                name=queue_name,
                groupname=self._stream.consumer_group,
                consumername=self._consumer_name,
                min_idle_time=self._queue_config.idle_timeout_ms,
                start_id="0-0",
                count=count,
            )
        except redis.ResponseError as e:
            if "unknown command" in str(e).lower():
                logger.warning("XAUTOCLAIM unavailable (Redis < 6.2), skipping reclaim")
            else:
                logger.error(f"Error reclaiming pending messages: {e}")
            return

        claimed = result[1] if result else []
        if not claimed:
            return

        logger.info(f"Reclaimed {len(claimed)} pending messages from {queue_name}")
        metrics = get_metrics()
        limit = self._queue_config.max_delivery_attempts
        deliveries = await self._delivery_counts([msg_id for msg_id, _ in claimed])

        for msg_id, fields in claimed:
            delivered = deliveries.get(msg_id, 1)
            if delivered > limit:
                logger.warning(f"Message {msg_id} delivered {delivered} times (limit {limit})")
                await self._dead_letter(msg_id, fields, "max_retries_exceeded")
                metrics.dlq_max_retries.labels(queue=queue_name).inc()
                continue

            # The current delivery is not a retry
            job = await self._decode(msg_id, fields, retry_count=delivered - 1)
            if job is not None:
                metrics.pending_reclaimed.labels(queue=queue_name).inc()
                yield job

    async def _decode(self, msg_id: str, fields: dict[str, str], retry_count: int) -> T | None:
        try:
            return self._parse_job(msg_id, fields, retry_count)
        except Exception as e:
            logger.error(f"Unparseable message {msg_id}: {e}")
            await self._dead_letter(msg_id, fields, str(e))
            return None

    async def _delivery_counts(self, message_ids: list[str]) -> dict[str, int]:
        """Times each message was delivered, from XPENDING."""
        try:
            pending = await self.redis.xpending_range(
                name=self._stream.stream_name,
                groupname=self._stream.consumer_group,
                min="-",
                max="+",
                count=len(message_ids) * 2,
            )
        except Exception as e:
            logger.error(f"Error reading delivery counts: {e}")
            return {}
        wanted = set(message_ids)
        return {
            entry["message_id"]: entry["times_delivered"]
            for entry in pending
            if entry["message_id"] in wanted
        }

    async def ack(self, message_id: str) -> None:
        await self.redis.xack(self._stream.stream_name, self._stream.consumer_group, message_id)

    async def _dead_letter(self, message_id: str, fields: dict[str, str], reason: str) -> None:
        await self._move_to_dlq(message_id, fields, reason)
        await self.ack(message_id)
        await self._on_dead_letter(fields, reason)

    async def _move_to_dlq(self, original_id: str, fields: dict[str, str], error: str | None) -> None:
        await self.redis.xadd(
            self._stream.dlq_stream_name,
            {
                **fields,
                "original_id": original_id,
                "error": error or "unknown",
                "failed_at": str(time.time()),
            },
            maxlen=DLQ_MAX_LENGTH,
            approximate=True,
        )
        logger.warning(f"Dead-lettered message {original_id}: {error}")

    async def get_dlq_length(self) -> int:
        return await self.redis.xlen(self._stream.dlq_stream_name)

    async def health_check(self) -> bool:
        try:
            await self.redis.ping()
        except Exception:
            return False
        return True

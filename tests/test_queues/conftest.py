"""Fixtures for queue tests: an in-memory stand-in for the Redis commands the queue uses."""

from unittest.mock import patch

import pytest
import pytest_asyncio

from topic_tracker.queues.config import JobPolicy, QueueConfig
from topic_tracker.queues.work_queue import TopicJobQueue
from topic_tracker.storage.schemas import TaskKind


class FakeRedis:
    """Dict-backed subset of redis.asyncio.Redis with decode_responses=True semantics."""

    def __init__(self):
        self.strings: dict[str, str] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.streams: dict[str, list[tuple[str, dict[str, str]]]] = {}
        self.acked: list[str] = []
        self.closed = False
        self._seq = 0

    async def xgroup_create(self, name, groupname, id="0", mkstream=False):
        self.streams.setdefault(name, [])

    async def aclose(self):
        self.closed = True

    async def ping(self):
        return True

    # strings
    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.strings:
            return None
        self.strings[key] = value
        return True

    async def get(self, key):
        return self.strings.get(key)

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            for store in (self.strings, self.hashes, self.zsets):
                if store.pop(key, None) is not None:
                    removed += 1
        return removed

    async def exists(self, *keys):
        return sum(1 for k in keys if k in self.strings or k in self.hashes)

    # hashes
    async def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})
        return len(mapping)

    async def hget(self, key, field):
        return self.hashes.get(key, {}).get(field)

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    # sorted sets
    async def zadd(self, key, mapping):
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    async def zrem(self, key, *members):
        zset = self.zsets.get(key, {})
        return sum(1 for m in members if zset.pop(m, None) is not None)

    async def zrangebyscore(self, key, min, max):
        zset = self.zsets.get(key, {})
        return [m for m, score in sorted(zset.items(), key=lambda kv: kv[1]) if min <= score <= max]

    async def zcard(self, key):
        return len(self.zsets.get(key, {}))

    # streams
    async def xadd(self, name, fields, maxlen=None, approximate=True):
        self._seq += 1
        message_id = f"{self._seq}-0"
        self.streams.setdefault(name, []).append((message_id, dict(fields)))
        return message_id

    async def xack(self, name, group, *ids):
        self.acked.extend(ids)
        return len(ids)

    async def xlen(self, name):
        return len(self.streams.get(name, []))


STREAM = "test_jobs"


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def queue_config():
    return QueueConfig(
        job_policies={
            TaskKind.PROCESS: JobPolicy(attempts=3, backoff_base_seconds=0.0),
            TaskKind.REVERT: JobPolicy(attempts=2, backoff_base_seconds=60.0),
            TaskKind.CLEAN: JobPolicy(attempts=1),
        },
        failed_health_threshold=2,
    )


@pytest_asyncio.fixture
async def queue(fake_redis, queue_config):
    with patch("redis.asyncio.from_url", return_value=fake_redis):
        job_queue = TopicJobQueue(
            redis_url="redis://localhost:6379/1",
            queue_config=queue_config,
            stream_name=STREAM,
            consumer_group="test_workers",
        )
        await job_queue.connect()
        yield job_queue
        await job_queue.close()


def last_message(fake_redis: FakeRedis, stream: str = STREAM) -> tuple[str, dict[str, str]]:
    return fake_redis.streams[stream][-1]

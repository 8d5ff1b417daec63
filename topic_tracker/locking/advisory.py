"""
Cluster-wide named locks on PostgreSQL session advisory locks.

A held lock pins one pooled connection until release, since advisory locks
belong to the session that took them. Each ``pg_try_advisory_lock`` attempt
borrows a connection and returns it to the pool on failure, so waiters do
not occupy the pool between polls. Acquisition fails closed once the
timeout elapses.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, TypeVar

from topic_tracker.config.settings import get_settings
from topic_tracker.observability.metrics import get_metrics
from topic_tracker.storage.database import APPLICATION_NAME, Database

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LockTimeoutError(Exception):
    """Raised when a named lock cannot be acquired within the timeout."""

    def __init__(self, name: str, timeout: float):
        self.name = name
        self.timeout = timeout
        super().__init__(f"Could not acquire lock {name!r} within {timeout:g}s")


def lock_key(name: str) -> int:
    """
    Deterministic non-negative 32-bit key for a lock name.

    31-multiplier string hash wrapped to a signed int32, then made
    positive, so every process derives the same key for the same name.
    """
    h = 0
    for ch in name:
        h = (31 * h + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


def _operation(name: str) -> str:
    # "process-topic-foo" -> "process-topic"; keeps metric cardinality bounded
    parts = name.split("-")
    return "-".join(parts[:2]) if len(parts) > 2 else name


class AdvisoryLockService:
    """
    Named mutual exclusion across workers and processes.

    Usage:
        locks = AdvisoryLockService(db)
        async with locks.hold("process-topic-python-releases"):
            ...
        result = await locks.with_lock("revert-topic-x", do_revert)
    """

    def __init__(
        self,
        database: Database,
        timeout: float | None = None,
        poll_interval: float | None = None,
    ):
        settings = get_settings()
        self._db = database
        self._timeout = timeout if timeout is not None else settings.lock_timeout_seconds
        self._poll_interval = (
            poll_interval
            if poll_interval is not None
            else settings.lock_poll_interval_ms / 1000
        )

    @asynccontextmanager
    async def hold(self, name: str, timeout: float | None = None) -> AsyncIterator[None]:
        """Hold the named lock for the body of the ``async with`` block."""
        timeout = self._timeout if timeout is None else timeout
        key = lock_key(name)
        metrics = get_metrics()

        start = time.monotonic()
        deadline = start + timeout

        while True:
            lease, conn = await self._try_lock(key)
            if lease is not None:
                break
            if time.monotonic() >= deadline:
                metrics.record_lock_wait(
                    _operation(name), time.monotonic() - start, timed_out=True
                )
                logger.warning(f"Lock timeout: {name} (key={key}) after {timeout:g}s")
                raise LockTimeoutError(name, timeout)
            await asyncio.sleep(self._poll_interval)

        waited = time.monotonic() - start
        metrics.record_lock_wait(_operation(name), waited)
        logger.debug(f"Acquired lock {name} (key={key}) after {waited:.3f}s")

        async with lease:
            try:
                yield
            finally:
                try:
                    await conn.fetchval("SELECT pg_advisory_unlock($1)", key)
                    logger.debug(f"Released lock {name} (key={key})")
                except Exception as e:
                    # Session locks die with the connection if the unlock itself fails
                    logger.error(f"Failed to release lock {name}: {e}")

    async def _try_lock(self, key: int) -> tuple[AsyncExitStack | None, Any]:
        """
        One lock attempt on a borrowed connection.

        On success returns the stack that owns the connection, which the
        caller closes after unlocking; on failure the connection is already
        back in the pool.
        """
        async with AsyncExitStack() as stack:
            conn = await stack.enter_async_context(self._db.acquire())
            if await conn.fetchval("SELECT pg_try_advisory_lock($1)", key):
                return stack.pop_all(), conn
        return None, None

    async def with_lock(
        self,
        name: str,
        fn: Callable[[], Awaitable[T]],
        timeout: float | None = None,
    ) -> T:
        """Run ``fn`` while exclusively holding the named lock."""
        async with self.hold(name, timeout):
            return await fn()

    async def is_locked(self, name: str) -> bool:
        """Whether any session currently holds the named lock."""
        locked = await self._db.fetchval(
            """
            SELECT EXISTS (
                SELECT 1 FROM pg_locks
                WHERE locktype = 'advisory'
                  AND classid = 0
                  AND objid = $1
                  AND granted
            )
            """,
            lock_key(name),
        )
        return bool(locked)

    async def active_locks(self) -> list[dict[str, Any]]:
        """Advisory locks granted to topic-tracker sessions, with the holding pid."""
        rows = await self._db.fetch(
            """
            SELECT l.objid AS key, l.pid
            FROM pg_locks l
            JOIN pg_stat_activity a ON a.pid = l.pid
            WHERE l.locktype = 'advisory'
              AND l.granted
              AND a.application_name = $1
            ORDER BY l.objid
            """,
            APPLICATION_NAME,
        )
        return [{"key": int(r["key"]), "pid": r["pid"]} for r in rows]

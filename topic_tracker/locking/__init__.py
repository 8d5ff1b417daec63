"""Distributed locking on PostgreSQL advisory locks."""

from topic_tracker.locking.advisory import AdvisoryLockService, LockTimeoutError, lock_key

__all__ = ["AdvisoryLockService", "LockTimeoutError", "lock_key"]

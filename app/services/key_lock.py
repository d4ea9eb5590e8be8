"""Per-key mutual exclusion for progress read-modify-write.

Two concurrent content views for the same (student, module) must not
both see completed_at == null and both report the completion.  The
store's conditional update already guarantees completed_at is written
once; this lock additionally serializes the whole record-and-evaluate
sequence so the unlock notification is computed from a consistent row.

Different keys never contend.

  InMemoryKeyLock: one asyncio.Lock per key, per process.  Enough for
    dev and a single worker.
  RedisKeyLock: redis-py's distributed lock, shared by every API
    process.  The lock has a TTL so a crashed holder cannot wedge a key.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Protocol

from redis.exceptions import LockError, RedisError

from app.core.errors import StoreUnavailable

logger = logging.getLogger(__name__)


class KeyLock(Protocol):
    def hold(self, key: str) -> AbstractAsyncContextManager[None]:
        """Async context manager that holds the lock for key.

        Raises StoreUnavailable when the lock cannot be acquired in time.
        """
        ...


class InMemoryKeyLock:
    def __init__(self, *, timeout_seconds: float = 5.0) -> None:
        self._timeout = timeout_seconds
        # key -> (lock, number of holders + waiters)
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    def _checkout(self, key: str) -> asyncio.Lock:
        lock, users = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, users + 1)
        return lock

    def _checkin(self, key: str) -> None:
        lock, users = self._locks[key]
        if users <= 1:
            del self._locks[key]
        else:
            self._locks[key] = (lock, users - 1)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._checkout(key)
        try:
            try:
                await asyncio.wait_for(lock.acquire(), self._timeout)
            except TimeoutError:
                raise StoreUnavailable(f"timed out waiting for lock {key}") from None
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)


class RedisKeyLock:
    _PREFIX = "lock:module-progress:"

    def __init__(
        self,
        redis_client,
        *,
        timeout_seconds: float = 5.0,
        blocking_timeout_seconds: float = 5.0,
    ) -> None:
        self._redis = redis_client
        self._timeout = timeout_seconds
        self._blocking_timeout = blocking_timeout_seconds

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._redis.lock(
            f"{self._PREFIX}{key}",
            timeout=self._timeout,
            blocking_timeout=self._blocking_timeout,
        )
        try:
            acquired = await lock.acquire()
        except RedisError as exc:
            raise StoreUnavailable("lock backend unavailable") from exc
        if not acquired:
            raise StoreUnavailable(f"timed out waiting for lock {key}")

        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # TTL ran out while we held it; the writes are already guarded
                # by the store's conditional update.
                logger.warning("Lock %s expired before release", key)

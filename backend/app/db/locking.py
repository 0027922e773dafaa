"""
Per-key in-process locks.

Row locks (SELECT ... FOR UPDATE) serialize writers across processes on
PostgreSQL. These keyed locks give the same per-budget serialization inside
one process, which is what makes SQLite (no row locking) safe in tests and
single-worker deployments. Locks for different keys never block each other.
"""

import asyncio
import weakref
from contextlib import asynccontextmanager

from backend.app.core.exceptions import ConcurrencyConflictError


class KeyedLockRegistry:
    """
    Hands out one asyncio.Lock per key.

    Entries are weakly referenced: a lock lives only while some coroutine
    holds or waits on it, so the registry never grows with the number of
    budgets ever touched.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, key: str, timeout: float):
        lock = self._lock_for(key)
        try:
            await asyncio.wait_for(lock.acquire(), timeout)
        except asyncio.TimeoutError:
            raise ConcurrencyConflictError(
                message=f"Timed out waiting for lock on {key}",
                details={"lock": key, "timeout_seconds": timeout}
            )
        try:
            yield
        finally:
            lock.release()

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


ledger_locks = KeyedLockRegistry()

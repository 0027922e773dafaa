"""
Scoped transaction helper.

A UnitOfWork wraps one injected AsyncSession: run the block, commit on
success, roll back on any error path, release held locks always. Repository
and service functions receive the unit explicitly instead of reaching for an
ambient connection.
"""

import logging
from contextlib import AsyncExitStack
from typing import Awaitable, Callable, List, Optional, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import settings
from backend.app.core.exceptions import ConcurrencyConflictError
from backend.app.db.locking import KeyedLockRegistry, ledger_locks

logger = logging.getLogger(__name__)

T = TypeVar("T")


class UnitOfWork:
    """
    One atomic unit of ledger work.

    Usage:
        async with UnitOfWork(db) as uow:
            await ledger.reserve(uow, budget_id, 30000, application_id=7)
    """

    def __init__(
        self,
        session: AsyncSession,
        locks: Optional[KeyedLockRegistry] = None,
        lock_timeout: Optional[float] = None,
    ):
        self.session = session
        self.locks = locks or ledger_locks
        self.lock_timeout = lock_timeout if lock_timeout is not None else settings.lock_timeout_seconds
        self._stack: Optional[AsyncExitStack] = None
        self._held: set = set()
        self._rollback_hooks: List[Callable[[], None]] = []

    async def __aenter__(self) -> "UnitOfWork":
        self._stack = AsyncExitStack()
        self._held = set()
        self._rollback_hooks = []
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        try:
            if exc_type is None:
                try:
                    await self.session.commit()
                except BaseException:
                    await self._rollback()
                    raise
            else:
                await self._rollback()
        finally:
            await self._stack.aclose()
            self._held.clear()
        return False

    async def lock(self, key: str) -> None:
        """Acquire the in-process lock for key until the unit ends. Re-entrant per unit."""
        if key in self._held:
            return
        await self._stack.enter_async_context(self.locks.hold(key, self.lock_timeout))
        self._held.add(key)

    def on_rollback(self, hook: Callable[[], None]) -> None:
        """Register cleanup for side effects outside the database (stored files)."""
        self._rollback_hooks.append(hook)

    async def _rollback(self) -> None:
        await self.session.rollback()
        for hook in reversed(self._rollback_hooks):
            try:
                hook()
            except OSError:
                logger.exception("Rollback cleanup hook failed")


async def run_atomic(
    session: AsyncSession,
    work: Callable[[UnitOfWork], Awaitable[T]],
    *,
    locks: Optional[KeyedLockRegistry] = None,
    retries: int = 1,
) -> T:
    """
    Run work inside a fresh UnitOfWork.

    ConcurrencyConflictError is retried transparently `retries` times with a
    new unit (the previous one has already rolled back), then surfaced.
    """
    attempt = 0
    while True:
        try:
            async with UnitOfWork(session, locks=locks) as uow:
                return await work(uow)
        except ConcurrencyConflictError as e:
            if attempt >= retries:
                raise
            attempt += 1
            logger.warning(
                "Retrying atomic unit after concurrency conflict",
                extra={"attempt": attempt, "error": e.message}
            )

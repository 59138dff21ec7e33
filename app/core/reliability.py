"""
Bounded, retrying transactions for ledger mutations.

Row mutations are serialized per key in-process (RowLockRegistry), by SELECT ... FOR UPDATE
in the database, and checked by the optimistic version column. Version collisions are
retried a bounded number of times; timeouts and connectivity failures surface as
TransientError.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional, Tuple, Type, TypeVar

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import settings
from app.core.exceptions import ConflictError, TransientError

logger = logging.getLogger("fee_ledger.reliability")

T = TypeVar("T")


class RowLockRegistry:
    """One asyncio.Lock per row key. Locks are dropped once nobody holds or waits on them."""

    def __init__(self) -> None:
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._waiters: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable, timeout: Optional[float] = None):
        timeout = settings.ledger_lock_timeout_seconds if timeout is None else timeout
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            if not await _acquire(lock, timeout):
                raise TransientError(
                    "Timed out waiting for the fee balance to become available",
                    {"key": _describe(key), "timeout_seconds": timeout},
                )
            try:
                yield
            finally:
                lock.release()
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                self._waiters.pop(key, None)
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


async def _acquire(lock: asyncio.Lock, timeout: float) -> bool:
    """Acquire lock within timeout. Returns False on timeout with the lock not held by us."""
    waiter = asyncio.ensure_future(lock.acquire())
    try:
        await asyncio.wait({waiter}, timeout=timeout)
    except BaseException:
        waiter.cancel()
        waiter.add_done_callback(lambda w: None if w.cancelled() else lock.release())
        raise
    if waiter.done():
        return True
    waiter.cancel()
    await asyncio.wait({waiter})
    if not waiter.cancelled():
        # acquired between the timeout and the cancel
        lock.release()
    return False


row_locks = RowLockRegistry()


async def run_atomic(
    db: AsyncSession,
    operation: Callable[[], Awaitable[T]],
    *,
    description: str,
    retry_on: Tuple[Type[BaseException], ...] = (StaleDataError,),
    retries: Optional[int] = None,
    timeout: Optional[float] = None,
    context: Optional[Dict[str, Any]] = None,
) -> T:
    """
    Run operation and commit as one transaction.

    Any exception rolls the session back so no partial write survives. Exceptions in
    retry_on are retried up to `retries` times and then raised as ConflictError.
    """
    retries = settings.ledger_conflict_retries if retries is None else retries
    timeout = settings.ledger_operation_timeout_seconds if timeout is None else timeout
    context = context or {}

    async def _attempt() -> T:
        result = await operation()
        await db.commit()
        return result

    for attempt in range(retries + 1):
        try:
            return await asyncio.wait_for(_attempt(), timeout=timeout)
        except retry_on as exc:
            await db.rollback()
            logger.warning(
                "%s collided with a concurrent write (attempt %d/%d): %s",
                description, attempt + 1, retries + 1, type(exc).__name__,
            )
            continue
        except asyncio.TimeoutError:
            await _safe_rollback(db)
            logger.error("%s timed out after %.1fs", description, timeout)
            raise TransientError(f"{description} timed out", dict(context, timeout_seconds=timeout))
        except (OperationalError, InterfaceError) as exc:
            await _safe_rollback(db)
            logger.error("%s failed on the database connection: %s", description, exc)
            raise TransientError(f"{description} failed: database unavailable", dict(context))
        except DBAPIError as exc:
            await _safe_rollback(db)
            if exc.connection_invalidated:
                raise TransientError(f"{description} failed: connection lost", dict(context))
            raise
        except BaseException:
            await _safe_rollback(db)
            raise

    raise ConflictError(
        f"{description} kept conflicting with concurrent updates",
        dict(context, attempts=retries + 1),
    )


async def _safe_rollback(db: AsyncSession) -> None:
    try:
        await db.rollback()
    except (OperationalError, InterfaceError, DBAPIError):
        logger.warning("rollback failed after error; session will be discarded")


def _describe(key: Hashable) -> str:
    if isinstance(key, tuple):
        return ":".join(getattr(k, "value", str(k)) for k in key)
    return str(key)

"""Per-account locks that serialise ledger mutations inside one process.

A lock taken through ``hold_account_locks`` stays held until the session's
outermost transaction ends (commit, rollback or close), so a second request
for the same account cannot read a balance the first one is about to commit.
Row locks (``SELECT ... FOR UPDATE``) do the same job across processes on
databases that support them.
"""

import asyncio
import logging
from typing import Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession

from starbit.errors import ConflictError

logger = logging.getLogger(__name__)

# Global lock registry: user_id -> asyncio.Lock
_account_locks: dict[int, asyncio.Lock] = {}
# user_id -> holders plus waiters; a lock leaves the registry when this hits 0
_lock_users: dict[int, int] = {}

_HELD_KEY = "starbit.account_locks"
_LISTENER_KEY = "starbit.account_locks_listener"


class LockTimeoutError(ConflictError):
    """Raised when an account lock cannot be acquired within the timeout."""

    code = "lock_timeout"


def get_account_lock(user_id: int) -> asyncio.Lock:
    """Get or create the lock for one account.

    Lookup and insert run without an await in between, so no registry lock is
    needed on a single event loop.
    """
    lock = _account_locks.get(user_id)
    if lock is None:
        lock = _account_locks[user_id] = asyncio.Lock()
    return lock


def _checkout(user_id: int) -> asyncio.Lock:
    _lock_users[user_id] = _lock_users.get(user_id, 0) + 1
    return get_account_lock(user_id)


def _checkin(user_id: int) -> None:
    remaining = _lock_users.get(user_id, 0) - 1
    if remaining > 0:
        _lock_users[user_id] = remaining
    else:
        _lock_users.pop(user_id, None)
        _account_locks.pop(user_id, None)


def _release_on_transaction_end(session, transaction) -> None:
    if transaction.parent is not None:
        return
    held: dict[int, asyncio.Lock] = session.info.get(_HELD_KEY) or {}
    for user_id, lock in list(held.items()):
        if lock.locked():
            lock.release()
        _checkin(user_id)
        logger.debug(f"Lock released for account {user_id}")
    held.clear()


async def hold_account_locks(
    session: AsyncSession,
    *user_ids: int,
    timeout: Optional[float] = 30.0,
    operation: str = "balance_operation",
) -> None:
    """Acquire the locks of ``user_ids`` for the rest of the session's transaction.

    Locks are taken in ascending id order and are re-entrant per session.

    Example:
        await hold_account_locks(session, buyer_id, seller_id, operation="release")
        await repo.transfer_locked(seller_id, buyer_id, "BTC", amount)
    """
    if not session.in_transaction():
        await session.connection()

    if not session.info.get(_LISTENER_KEY):
        event.listen(session.sync_session, "after_transaction_end", _release_on_transaction_end)
        session.info[_LISTENER_KEY] = True

    held: dict[int, asyncio.Lock] = session.info.setdefault(_HELD_KEY, {})
    for user_id in sorted(set(user_ids)):
        if user_id in held:
            continue
        lock = _checkout(user_id)
        try:
            if timeout:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            else:
                await lock.acquire()
        except asyncio.CancelledError:
            _checkin(user_id)
            raise
        except asyncio.TimeoutError:
            _checkin(user_id)
            logger.warning(f"Lock timeout for account {user_id} after {timeout}s: {operation}")
            raise LockTimeoutError(
                f"Account {user_id} is busy with another operation; retry shortly"
            ) from None
        held[user_id] = lock
        logger.debug(f"Lock acquired for account {user_id}: {operation}")


def clear_account_locks() -> None:
    """Clear all account locks (useful for testing)."""
    _account_locks.clear()
    _lock_users.clear()

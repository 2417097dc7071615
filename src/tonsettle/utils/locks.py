"""In-process concurrency control.

Provides keyed asyncio locks: per-user locks around balance-changing request
handlers and per-deposit locks around verification. Cross-process safety
comes from the conditional UPDATEs in the repository; these locks only keep
one process from racing itself.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

logger = logging.getLogger(__name__)

# Global lock registry: key -> asyncio.Lock, with the number of tasks holding
# or waiting on each. An entry is dropped once that count returns to zero.
_locks: dict[str, asyncio.Lock] = {}
_users: dict[str, int] = {}


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout period."""

    pass


def _checkout(key: str) -> asyncio.Lock:
    lock = _locks.get(key)
    if lock is None:
        lock = _locks[key] = asyncio.Lock()
    _users[key] = _users.get(key, 0) + 1
    return lock


def _checkin(key: str) -> None:
    remaining = _users.get(key, 0) - 1
    if remaining > 0:
        _users[key] = remaining
    else:
        _users.pop(key, None)
        _locks.pop(key, None)


def active_lock_count() -> int:
    """Number of keys currently held or waited on."""
    return len(_locks)


@asynccontextmanager
async def keyed_lock(
    key: str,
    timeout: Optional[float] = 30.0,
    operation: str = "operation",
):
    """Hold the lock for `key` for the duration of the block.

    Args:
        key: Lock key, e.g. "user:42" or "deposit:7"
        timeout: Maximum time to wait for the lock (None = wait forever)
        operation: Description for logging

    Raises:
        LockTimeoutError: lock not acquired within timeout

    Example:
        async with keyed_lock(f"deposit:{deposit_id}", operation="verify"):
            ...
    """
    lock = _checkout(key)
    try:
        try:
            if timeout:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            else:
                await lock.acquire()
        except asyncio.TimeoutError:
            logger.warning(f"Lock timeout for {key} after {timeout}s: {operation}")
            raise LockTimeoutError(f"Could not acquire lock for {key} within {timeout}s")

        logger.debug(f"Lock acquired for {key}: {operation}")
        try:
            yield
        finally:
            lock.release()
            logger.debug(f"Lock released for {key}: {operation}")
    finally:
        _checkin(key)


def user_balance_lock(
    user_id: int,
    timeout: Optional[float] = 30.0,
    operation: str = "balance_operation",
):
    """Per-user lock around balance-changing requests."""
    return keyed_lock(f"user:{user_id}", timeout=timeout, operation=operation)


def deposit_lock(deposit_id: int, timeout: Optional[float] = 60.0):
    """Per-deposit lock around verification."""
    return keyed_lock(f"deposit:{deposit_id}", timeout=timeout, operation="verify_deposit")


def clear_locks() -> None:
    """Clear all locks (useful for testing)."""
    _locks.clear()
    _users.clear()

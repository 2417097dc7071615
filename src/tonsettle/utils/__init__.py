"""Utility modules for tonsettle."""

from tonsettle.utils.locks import LockTimeoutError, keyed_lock, user_balance_lock

__all__ = ["LockTimeoutError", "keyed_lock", "user_balance_lock"]

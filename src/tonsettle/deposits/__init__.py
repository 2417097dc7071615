"""Deposit matching and settlement."""

from tonsettle.deposits.matcher import DepositMatcher, MatchResult
from tonsettle.deposits.service import (
    DepositNotFoundError,
    DepositResult,
    DepositService,
    DuplicateTransactionError,
)

__all__ = [
    "DepositMatcher",
    "DepositNotFoundError",
    "DepositResult",
    "DepositService",
    "DuplicateTransactionError",
    "MatchResult",
]

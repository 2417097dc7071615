"""Withdrawal module: request creation, the send state machine and its worker."""

from tonsettle.withdrawal.base import (
    InvalidWithdrawRequestError,
    MaxAttemptsExceededError,
    PayoutUnavailableError,
    WithdrawResult,
)
from tonsettle.withdrawal.engine import WithdrawalEngine
from tonsettle.withdrawal.factory import get_withdrawal_engine
from tonsettle.withdrawal.service import WithdrawService

__all__ = [
    "InvalidWithdrawRequestError",
    "MaxAttemptsExceededError",
    "PayoutUnavailableError",
    "WithdrawResult",
    "WithdrawalEngine",
    "WithdrawService",
    "get_withdrawal_engine",
]

"""Shared types for withdrawal handling.

Withdrawal flow:
1. User requests withdrawal (asset, amount, destination)
2. Balance is debited and a CREATED request stored, in one transaction
3. Worker claims the request (CREATED -> PROCESSING, attempts + 1)
4. Transfer is built, signed and broadcast from the hot wallet
5. Request becomes CONFIRMED with the tx hash, or goes back to CREATED
   for a retry, or becomes FAILED with a refund once attempts run out
"""

from dataclasses import dataclass
from typing import Optional

from tonsettle.ledger.models import WithdrawStatus


class WithdrawalError(Exception):
    """Base class for withdrawal errors."""

    pass


class MaxAttemptsExceededError(WithdrawalError):
    """A request used up its attempts and is terminally failed."""

    def __init__(self, request_id: int, attempts: int, max_attempts: int):
        self.request_id = request_id
        self.attempts = attempts
        self.max_attempts = max_attempts
        super().__init__(
            f"Withdraw {request_id} exhausted {attempts}/{max_attempts} attempts"
        )


class PayoutUnavailableError(WithdrawalError):
    """No hot wallet is configured to sign transfers."""

    pass


class InvalidWithdrawRequestError(WithdrawalError, ValueError):
    """Request rejected before any debit (bad amount or destination)."""

    pass


@dataclass
class WithdrawResult:
    """Result of a withdrawal state transition."""

    request_id: int
    status: WithdrawStatus
    tx_hash: Optional[str] = None
    attempts: int = 0
    error: Optional[str] = None
    refunded: bool = False

    @property
    def success(self) -> bool:
        return self.status == WithdrawStatus.CONFIRMED

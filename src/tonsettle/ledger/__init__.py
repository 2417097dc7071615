"""Ledger module for user balances, deposits and withdraw requests."""

from tonsettle.ledger.database import get_db, init_db
from tonsettle.ledger.models import (
    MAX_AMOUNT,
    Asset,
    Balance,
    CoinflipGame,
    Deposit,
    DepositStatus,
    UnsupportedAssetError,
    User,
    WithdrawRequest,
    WithdrawStatus,
)
from tonsettle.ledger.repository import (
    BalanceNotFoundError,
    BalanceOverflowError,
    InsufficientBalanceError,
    LedgerRepository,
)

__all__ = [
    # Models
    "User",
    "Balance",
    "Deposit",
    "WithdrawRequest",
    "CoinflipGame",
    "MAX_AMOUNT",
    # Enums
    "Asset",
    "DepositStatus",
    "WithdrawStatus",
    # Errors
    "BalanceNotFoundError",
    "BalanceOverflowError",
    "InsufficientBalanceError",
    "UnsupportedAssetError",
    # Database
    "get_db",
    "init_db",
    "LedgerRepository",
]

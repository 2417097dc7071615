"""SQLAlchemy models for the ledger."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# Amounts are stored in signed 64-bit BIGINT columns; no single amount or
# balance may exceed this, although on-chain values are unsigned 64-bit.
MAX_AMOUNT = 2**63 - 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Asset(str, Enum):
    """Assets settled by the ledger.

    TON is the chain's native coin (nanoton units), USDT is the jetton
    (micro-USDT units). Each asset maps to exactly one balance column.
    """

    TON = "TON"
    USDT = "USDT"

    @property
    def balance_column(self) -> str:
        return "ton_nano" if self is Asset.TON else "usdt_micro"

    @property
    def is_native(self) -> bool:
        return self is Asset.TON

    @classmethod
    def parse(cls, value: "str | Asset") -> "Asset":
        """Parse an asset symbol, case-insensitively."""
        if isinstance(value, Asset):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise UnsupportedAssetError(f"Unsupported asset: {value}") from None


class UnsupportedAssetError(ValueError):
    """Raised for asset symbols outside the settled set."""

    pass


class DepositStatus(str, Enum):
    """Status of a deposit."""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"


class WithdrawStatus(str, Enum):
    """Status of a withdraw request."""

    CREATED = "CREATED"          # Waiting to be claimed by the worker
    PROCESSING = "PROCESSING"    # Claimed, transfer in flight
    CONFIRMED = "CONFIRMED"      # Broadcast accepted, tx hash stored
    FAILED = "FAILED"            # Terminal, amount refunded


class User(Base):
    """User account linked to Telegram."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    telegram_id: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False, index=True)
    username: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    # Relationships
    balance: Mapped["Balance"] = relationship(back_populates="user", lazy="selectin")


class Balance(Base):
    """Per-user balance, one column per asset in the asset's smallest unit."""

    __tablename__ = "balances"
    __table_args__ = (
        CheckConstraint("ton_nano >= 0", name="ck_balances_ton_nonneg"),
        CheckConstraint("usdt_micro >= 0", name="ck_balances_usdt_nonneg"),
    )

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), primary_key=True)
    ton_nano: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    usdt_micro: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    # Relationships
    user: Mapped["User"] = relationship(back_populates="balance")

    def amount_of(self, asset: Asset) -> int:
        return getattr(self, Asset.parse(asset).balance_column)


class Deposit(Base):
    """A user's claim that funds were sent to the deposit address."""

    __tablename__ = "deposits"
    __table_args__ = (Index("ix_deposits_status_created", "status", "created_at"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    asset: Mapped[str] = mapped_column(String(10), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    from_address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default=DepositStatus.PENDING.value, nullable=False
    )
    # Unique: one chain transaction credits at most one deposit
    tx_hash: Mapped[Optional[str]] = mapped_column(String(128), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class WithdrawRequest(Base):
    """Outbound transfer request, debited from the balance at creation."""

    __tablename__ = "withdraw_requests"
    __table_args__ = (
        Index("ix_withdraw_requests_status_created", "status", "created_at"),
        CheckConstraint("amount > 0", name="ck_withdraw_requests_amount_pos"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    asset: Mapped[str] = mapped_column(String(10), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    to_address: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=WithdrawStatus.CREATED.value, nullable=False
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(128), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class CoinflipGame(Base):
    """A settled coinflip bet."""

    __tablename__ = "coinflip_games"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    stake_nano: Mapped[int] = mapped_column(BigInteger, nullable=False)
    chosen_side: Mapped[str] = mapped_column(String(5), nullable=False)  # HEADS / TAILS
    result_side: Mapped[str] = mapped_column(String(5), nullable=False)
    win: Mapped[bool] = mapped_column(Boolean, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

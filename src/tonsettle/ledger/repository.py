"""Repository for ledger operations.

Balance mutations and status transitions are single conditional UPDATE
statements, so the database itself arbitrates concurrent writers: a
transition whose precondition no longer holds simply affects zero rows.
"""

from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tonsettle.ledger.models import (
    MAX_AMOUNT,
    Asset,
    Balance,
    CoinflipGame,
    Deposit,
    DepositStatus,
    User,
    WithdrawRequest,
    WithdrawStatus,
    utcnow,
)


class InsufficientBalanceError(ValueError):
    """Raised when a debit would take a balance below zero."""

    def __init__(self, asset: Asset, required: int, available: int):
        self.asset = asset
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient balance: have {available} {asset.value}, need {required}"
        )


class BalanceOverflowError(ValueError):
    """Raised when a credit would push a balance past MAX_AMOUNT."""

    pass


class BalanceNotFoundError(LookupError):
    """Raised when a user has no balance row."""

    pass


class LedgerRepository:
    """Repository for all ledger-related database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # User operations
    async def get_or_create_user(
        self,
        telegram_id: int,
        username: Optional[str] = None,
    ) -> User:
        """Get existing user or create a new one together with a zero balance."""
        stmt = select(User).where(User.telegram_id == telegram_id)
        result = await self.session.execute(stmt)
        user = result.scalar_one_or_none()

        if user is None:
            user = User(telegram_id=telegram_id, username=username)
            self.session.add(user)
            await self.session.flush()
            self.session.add(Balance(user_id=user.id, ton_nano=0, usdt_micro=0))
            await self.session.flush()

        return user

    async def get_user(self, user_id: int) -> Optional[User]:
        return await self.session.get(User, user_id)

    async def get_user_by_telegram_id(self, telegram_id: int) -> Optional[User]:
        """Get user by Telegram ID."""
        stmt = select(User).where(User.telegram_id == telegram_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    # Balance operations
    async def get_balance(self, user_id: int) -> Balance:
        """Get the user's balance row, re-read from the database."""
        stmt = (
            select(Balance)
            .where(Balance.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        balance = result.scalar_one_or_none()
        if balance is None:
            raise BalanceNotFoundError(f"No balance for user {user_id}")
        return balance

    async def credit(self, user_id: int, asset: Asset | str, amount: int) -> int:
        """Add a positive amount to a balance. Returns the new amount.

        Raises:
            BalanceOverflowError: the result would exceed MAX_AMOUNT; the
                balance is left unchanged
        """
        asset = Asset.parse(asset)
        _require_positive(amount)
        column = getattr(Balance, asset.balance_column)

        stmt = (
            update(Balance)
            .where(Balance.user_id == user_id, column <= MAX_AMOUNT - amount)
            .values({column: column + amount, Balance.updated_at: utcnow()})
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)

        balance = await self.get_balance(user_id)
        if result.rowcount != 1:
            raise BalanceOverflowError(
                f"Credit of {amount} {asset.value} would exceed the balance limit "
                f"(have {balance.amount_of(asset)})"
            )
        return balance.amount_of(asset)

    async def debit(self, user_id: int, asset: Asset | str, amount: int) -> int:
        """Subtract a positive amount from a balance. Returns the new amount.

        Raises:
            InsufficientBalanceError: balance is smaller than amount; the
                balance is left unchanged
        """
        asset = Asset.parse(asset)
        _require_positive(amount)
        column = getattr(Balance, asset.balance_column)

        stmt = (
            update(Balance)
            .where(Balance.user_id == user_id, column >= amount)
            .values({column: column - amount, Balance.updated_at: utcnow()})
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)

        balance = await self.get_balance(user_id)
        if result.rowcount != 1:
            raise InsufficientBalanceError(asset, amount, balance.amount_of(asset))
        return balance.amount_of(asset)

    # Deposit operations
    async def create_deposit(
        self,
        user_id: int,
        asset: Asset | str,
        amount: int,
        from_address: Optional[str] = None,
        status: DepositStatus = DepositStatus.PENDING,
        tx_hash: Optional[str] = None,
    ) -> Deposit:
        """Create a new deposit record."""
        deposit = Deposit(
            user_id=user_id,
            asset=Asset.parse(asset).value,
            amount=amount,
            from_address=from_address,
            status=status.value,
            tx_hash=tx_hash,
        )
        if status == DepositStatus.CONFIRMED:
            deposit.confirmed_at = utcnow()
        self.session.add(deposit)
        await self.session.flush()
        return deposit

    async def get_deposit(self, deposit_id: int) -> Optional[Deposit]:
        stmt = (
            select(Deposit)
            .where(Deposit.id == deposit_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_deposit_by_tx_hash(self, tx_hash: str) -> Optional[Deposit]:
        stmt = select(Deposit).where(Deposit.tx_hash == tx_hash)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_used_tx_hashes(
        self, tx_hashes: Iterable[str], exclude_deposit_id: Optional[int] = None
    ) -> set[str]:
        """Return which of the given hashes are already attached to a deposit."""
        hashes = [h for h in set(tx_hashes) if h]
        if not hashes:
            return set()
        stmt = select(Deposit.tx_hash).where(Deposit.tx_hash.in_(hashes))
        if exclude_deposit_id is not None:
            stmt = stmt.where(Deposit.id != exclude_deposit_id)
        result = await self.session.execute(stmt)
        return {row for row in result.scalars().all() if row}

    async def confirm_deposit(self, deposit_id: int, tx_hash: str) -> bool:
        """Move a PENDING deposit to CONFIRMED with its chain tx hash.

        Returns False when the deposit is no longer PENDING.
        """
        stmt = (
            update(Deposit)
            .where(Deposit.id == deposit_id, Deposit.status == DepositStatus.PENDING.value)
            .values(
                status=DepositStatus.CONFIRMED.value,
                tx_hash=tx_hash,
                confirmed_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def reject_deposit(self, deposit_id: int) -> bool:
        """Move a PENDING deposit to REJECTED. No balance change."""
        stmt = (
            update(Deposit)
            .where(Deposit.id == deposit_id, Deposit.status == DepositStatus.PENDING.value)
            .values(status=DepositStatus.REJECTED.value)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def get_user_deposits(
        self, user_id: int, limit: int = 20, offset: int = 0
    ) -> list[Deposit]:
        """Get deposits for a user, newest first."""
        stmt = (
            select(Deposit)
            .where(Deposit.user_id == user_id)
            .order_by(Deposit.created_at.desc(), Deposit.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_pending_deposit_ids(self, limit: int = 50) -> list[int]:
        """Oldest PENDING deposits first."""
        stmt = (
            select(Deposit.id)
            .where(Deposit.status == DepositStatus.PENDING.value)
            .order_by(Deposit.created_at, Deposit.id)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # Withdraw operations
    async def create_withdraw_request(
        self,
        user_id: int,
        asset: Asset | str,
        amount: int,
        to_address: str,
    ) -> WithdrawRequest:
        request = WithdrawRequest(
            user_id=user_id,
            asset=Asset.parse(asset).value,
            amount=amount,
            to_address=to_address,
            status=WithdrawStatus.CREATED.value,
            attempts=0,
        )
        self.session.add(request)
        await self.session.flush()
        return request

    async def get_withdraw_request(self, request_id: int) -> Optional[WithdrawRequest]:
        stmt = (
            select(WithdrawRequest)
            .where(WithdrawRequest.id == request_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_user_withdrawals(
        self, user_id: int, limit: int = 20, offset: int = 0
    ) -> list[WithdrawRequest]:
        stmt = (
            select(WithdrawRequest)
            .where(WithdrawRequest.user_id == user_id)
            .order_by(WithdrawRequest.created_at.desc(), WithdrawRequest.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_created_withdraw_ids(self, limit: int) -> list[int]:
        """Oldest CREATED requests first.

        On PostgreSQL the rows are locked with SKIP LOCKED so that
        concurrent claimers pick disjoint candidates.
        """
        stmt = (
            select(WithdrawRequest.id)
            .where(WithdrawRequest.status == WithdrawStatus.CREATED.value)
            .order_by(WithdrawRequest.created_at, WithdrawRequest.id)
            .limit(limit)
        )
        bind = self.session.get_bind()
        if bind.dialect.name == "postgresql":
            stmt = stmt.with_for_update(skip_locked=True)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def claim_withdraw(self, request_id: int) -> bool:
        """CREATED -> PROCESSING, consuming one attempt."""
        now = utcnow()
        stmt = (
            update(WithdrawRequest)
            .where(
                WithdrawRequest.id == request_id,
                WithdrawRequest.status == WithdrawStatus.CREATED.value,
            )
            .values(
                status=WithdrawStatus.PROCESSING.value,
                attempts=WithdrawRequest.attempts + 1,
                last_error=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def confirm_withdraw(self, request_id: int, tx_hash: str) -> bool:
        """PROCESSING -> CONFIRMED with the broadcast tx hash."""
        now = utcnow()
        stmt = (
            update(WithdrawRequest)
            .where(
                WithdrawRequest.id == request_id,
                WithdrawRequest.status == WithdrawStatus.PROCESSING.value,
            )
            .values(
                status=WithdrawStatus.CONFIRMED.value,
                tx_hash=tx_hash,
                last_error=None,
                processed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def release_withdraw(self, request_id: int, error: str) -> bool:
        """PROCESSING -> CREATED so the worker retries it."""
        stmt = (
            update(WithdrawRequest)
            .where(
                WithdrawRequest.id == request_id,
                WithdrawRequest.status == WithdrawStatus.PROCESSING.value,
            )
            .values(
                status=WithdrawStatus.CREATED.value,
                last_error=error,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def defer_withdraw(self, request_id: int, error: str) -> bool:
        """PROCESSING -> CREATED, giving back the attempt the claim consumed."""
        stmt = (
            update(WithdrawRequest)
            .where(
                WithdrawRequest.id == request_id,
                WithdrawRequest.status == WithdrawStatus.PROCESSING.value,
                WithdrawRequest.attempts > 0,
            )
            .values(
                status=WithdrawStatus.CREATED.value,
                attempts=WithdrawRequest.attempts - 1,
                last_error=error,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def fail_withdraw(self, request_id: int, error: str) -> bool:
        """PROCESSING -> FAILED (terminal)."""
        now = utcnow()
        stmt = (
            update(WithdrawRequest)
            .where(
                WithdrawRequest.id == request_id,
                WithdrawRequest.status == WithdrawStatus.PROCESSING.value,
            )
            .values(
                status=WithdrawStatus.FAILED.value,
                last_error=error,
                processed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def get_stuck_withdraws(self, cutoff: datetime) -> list[WithdrawRequest]:
        """PROCESSING requests last touched before the cutoff."""
        stmt = (
            select(WithdrawRequest)
            .where(
                WithdrawRequest.status == WithdrawStatus.PROCESSING.value,
                WithdrawRequest.updated_at < cutoff,
            )
            .order_by(WithdrawRequest.updated_at, WithdrawRequest.id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def reset_stuck_withdraw(self, request_id: int, cutoff: datetime) -> bool:
        """PROCESSING -> CREATED for a stale request; attempts untouched."""
        stmt = (
            update(WithdrawRequest)
            .where(
                WithdrawRequest.id == request_id,
                WithdrawRequest.status == WithdrawStatus.PROCESSING.value,
                WithdrawRequest.updated_at < cutoff,
            )
            .values(
                status=WithdrawStatus.CREATED.value,
                last_error="Recovered after processing timeout",
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    # Game operations
    async def create_coinflip_game(
        self,
        user_id: int,
        stake_nano: int,
        chosen_side: str,
        result_side: str,
        win: bool,
    ) -> CoinflipGame:
        game = CoinflipGame(
            user_id=user_id,
            stake_nano=stake_nano,
            chosen_side=chosen_side,
            result_side=result_side,
            win=win,
        )
        self.session.add(game)
        await self.session.flush()
        return game


def _require_positive(amount: int) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValueError(f"Amount must be a positive integer, got {amount!r}")
    if amount > MAX_AMOUNT:
        raise ValueError(f"Amount {amount} exceeds the ledger limit {MAX_AMOUNT}")

"""Deposit claim and verification.

A user claims "I sent X of asset A (from address F)"; the claim is stored
PENDING and verified against recent chain activity. Confirmation, the chain
tx hash and the balance credit are written in one database transaction, so
a chain transaction credits at most one deposit and a deposit is credited at
most once. Chain reads happen outside any database transaction.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from sqlalchemy.exc import IntegrityError

from tonsettle.chain.base import ChainReader, ChainUnavailableError
from tonsettle.config import Settings, get_settings
from tonsettle.deposits.matcher import DepositMatcher
from tonsettle.ledger.database import get_db
from tonsettle.ledger.models import MAX_AMOUNT, Asset, Deposit, DepositStatus
from tonsettle.ledger.repository import LedgerRepository
from tonsettle.utils.locks import deposit_lock

logger = logging.getLogger(__name__)


class DuplicateTransactionError(Exception):
    """The chain transaction is already attached to another deposit."""

    pass


class DepositNotFoundError(LookupError):
    """No deposit with the given id."""

    pass


@dataclass
class DepositResult:
    """Outcome of a claim or verification."""

    deposit_id: int
    status: DepositStatus
    tx_hash: Optional[str] = None
    credited: bool = False
    message: str = ""

    @property
    def confirmed(self) -> bool:
        return self.status == DepositStatus.CONFIRMED


def _result_from(deposit: Deposit, message: str = "") -> DepositResult:
    return DepositResult(
        deposit_id=deposit.id,
        status=DepositStatus(deposit.status),
        tx_hash=deposit.tx_hash,
        message=message,
    )


class DepositService:
    """Claims, verifies, confirms and rejects deposits."""

    def __init__(
        self,
        reader: ChainReader,
        settings: Optional[Settings] = None,
        matcher: Optional[DepositMatcher] = None,
    ):
        self.reader = reader
        self.settings = settings or get_settings()
        self.matcher = matcher or DepositMatcher(self.settings.deposit_ton_address)

    async def claim_deposit(
        self,
        user_id: int,
        amount: int,
        from_address: Optional[str] = None,
        asset: Asset | str = Asset.TON,
    ) -> DepositResult:
        """Record a PENDING deposit and try to verify it once."""
        asset = Asset.parse(asset)
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValueError(f"Deposit amount must be a positive integer, got {amount!r}")
        if amount > MAX_AMOUNT:
            raise ValueError(f"Deposit amount exceeds the ledger limit {MAX_AMOUNT}")

        async with get_db() as session:
            repo = LedgerRepository(session)
            deposit = await repo.create_deposit(
                user_id=user_id,
                asset=asset,
                amount=amount,
                from_address=from_address or None,
            )
            deposit_id = deposit.id

        logger.info(f"Deposit {deposit_id} claimed: user={user_id} {amount} {asset.value}")
        return await self.verify_pending_deposit(deposit_id)

    async def verify_pending_deposit(self, deposit_id: int) -> DepositResult:
        """Try to settle a PENDING deposit. Idempotent.

        A deposit that is no longer PENDING is returned as stored, without
        any chain access or balance change.
        """
        async with deposit_lock(deposit_id):
            async with get_db() as session:
                deposit = await LedgerRepository(session).get_deposit(deposit_id)
            if deposit is None:
                raise DepositNotFoundError(f"Deposit {deposit_id} not found")
            if deposit.status != DepositStatus.PENDING.value:
                return _result_from(deposit, "already settled")

            asset = Asset.parse(deposit.asset)
            try:
                candidates = await self._fetch_candidates(asset)
            except ChainUnavailableError as e:
                logger.warning(f"Deposit {deposit_id}: chain unavailable, staying pending: {e}")
                return _result_from(deposit, "chain unavailable")

            if not candidates:
                return _result_from(deposit, "no matching transaction")

            async with get_db() as session:
                used = await LedgerRepository(session).get_used_tx_hashes(
                    (c.hash for c in candidates), exclude_deposit_id=deposit_id
                )

            match = self.matcher.match(
                asset, deposit.amount, deposit.from_address, candidates, used
            )
            if not match.matched:
                return _result_from(deposit, match.reason)

            try:
                return await self._confirm(deposit, match.tx_hash)
            except DuplicateTransactionError as e:
                logger.warning(f"Deposit {deposit_id}: {e}")
                return _result_from(deposit, "transaction already used")

    async def _fetch_candidates(self, asset: Asset) -> Sequence:
        address = self.settings.deposit_ton_address
        if not address:
            logger.warning("DEPOSIT_TON_ADDRESS not set - deposits cannot be verified")
            return []

        if asset.is_native:
            return await self.reader.get_transactions(
                address, self.settings.verify_lookback_tx_count
            )

        if not self.settings.usdt_jetton_master:
            logger.warning("USDT_JETTON_MASTER not set - token deposits cannot be verified")
            return []
        return await self.reader.get_token_transfers(
            address, self.settings.usdt_jetton_master, self.settings.token_lookback_count
        )

    async def _confirm(self, deposit: Deposit, tx_hash: str) -> DepositResult:
        """PENDING -> CONFIRMED plus credit, atomically."""
        try:
            async with get_db() as session:
                repo = LedgerRepository(session)

                existing = await repo.get_deposit_by_tx_hash(tx_hash)
                if existing is not None and existing.id != deposit.id:
                    raise DuplicateTransactionError(
                        f"Transaction {tx_hash} already credited to deposit {existing.id}"
                    )

                if not await repo.confirm_deposit(deposit.id, tx_hash):
                    current = await repo.get_deposit(deposit.id)
                    return _result_from(current, "already settled")

                new_balance = await repo.credit(deposit.user_id, deposit.asset, deposit.amount)
        except IntegrityError as e:
            raise DuplicateTransactionError(
                f"Transaction {tx_hash} already credited to another deposit"
            ) from e

        logger.info(
            f"Deposit {deposit.id} confirmed by {tx_hash}: credited {deposit.amount} "
            f"{deposit.asset} to user {deposit.user_id} (balance {new_balance})"
        )
        return DepositResult(
            deposit_id=deposit.id,
            status=DepositStatus.CONFIRMED,
            tx_hash=tx_hash,
            credited=True,
            message="confirmed",
        )

    async def verify_pending_batch(self, limit: int = 50) -> int:
        """Re-verify the oldest PENDING deposits. Returns how many confirmed."""
        async with get_db() as session:
            deposit_ids = await LedgerRepository(session).get_pending_deposit_ids(limit)

        confirmed = 0
        for deposit_id in deposit_ids:
            try:
                result = await self.verify_pending_deposit(deposit_id)
            except Exception as e:
                logger.error(f"Error verifying deposit {deposit_id}: {e}")
                continue
            if result.credited:
                confirmed += 1
        return confirmed

    async def reject_deposit(self, deposit_id: int) -> bool:
        """PENDING -> REJECTED without a balance change."""
        async with get_db() as session:
            rejected = await LedgerRepository(session).reject_deposit(deposit_id)
        if rejected:
            logger.info(f"Deposit {deposit_id} rejected")
        return rejected

    async def record_confirmed_deposit(
        self,
        user_id: int,
        asset: Asset | str,
        amount: int,
        tx_hash: str,
        from_address: Optional[str] = None,
    ) -> DepositResult:
        """Record an already verified deposit and credit it (admin path)."""
        asset = Asset.parse(asset)
        if not tx_hash:
            raise ValueError("tx_hash is required")
        try:
            async with get_db() as session:
                repo = LedgerRepository(session)
                if await repo.get_deposit_by_tx_hash(tx_hash) is not None:
                    raise DuplicateTransactionError(f"Transaction {tx_hash} already recorded")
                deposit = await repo.create_deposit(
                    user_id=user_id,
                    asset=asset,
                    amount=amount,
                    from_address=from_address,
                    status=DepositStatus.CONFIRMED,
                    tx_hash=tx_hash,
                )
                await repo.credit(user_id, asset, amount)
        except IntegrityError as e:
            raise DuplicateTransactionError(f"Transaction {tx_hash} already recorded") from e

        logger.info(f"Recorded deposit {deposit.id} ({tx_hash}) for user {user_id}")
        return DepositResult(
            deposit_id=deposit.id,
            status=DepositStatus.CONFIRMED,
            tx_hash=tx_hash,
            credited=True,
            message="recorded",
        )

    async def get_deposit(self, deposit_id: int) -> Optional[Deposit]:
        async with get_db() as session:
            return await LedgerRepository(session).get_deposit(deposit_id)

    async def is_deposit_owned_by_user(self, deposit_id: int, user_id: int) -> bool:
        deposit = await self.get_deposit(deposit_id)
        return deposit is not None and deposit.user_id == user_id

    async def get_user_deposits(self, user_id: int, limit: int = 20) -> list[Deposit]:
        async with get_db() as session:
            return await LedgerRepository(session).get_user_deposits(user_id, limit=limit)

"""Withdraw request creation.

The balance is debited and the request inserted in the same database
transaction, so a request exists exactly when its amount has left the
balance.
"""

import logging
from typing import Optional

from tonsettle.config import Settings, get_settings
from tonsettle.ledger.database import get_db
from tonsettle.ledger.models import MAX_AMOUNT, Asset, WithdrawRequest
from tonsettle.ledger.repository import LedgerRepository
from tonsettle.ton.address import AddressParseError, parse_address
from tonsettle.utils.locks import user_balance_lock
from tonsettle.withdrawal.base import InvalidWithdrawRequestError

logger = logging.getLogger(__name__)


class WithdrawService:
    """Validates and records withdraw requests."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def _minimum(self, asset: Asset) -> int:
        if asset is Asset.TON:
            return self.settings.min_withdraw_ton_nano
        return self.settings.min_withdraw_usdt_micro

    async def create_withdraw_request(
        self,
        user_id: int,
        asset: Asset | str,
        amount: int,
        to_address: str,
    ) -> WithdrawRequest:
        """Debit the balance and store a CREATED request.

        Raises:
            UnsupportedAssetError: unknown asset symbol
            InvalidWithdrawRequestError: bad amount or destination
            InsufficientBalanceError: balance too low; nothing is stored
        """
        asset = Asset.parse(asset)
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidWithdrawRequestError("Amount must be positive")
        if amount > MAX_AMOUNT:
            raise InvalidWithdrawRequestError(f"Amount exceeds the ledger limit {MAX_AMOUNT}")
        if amount < self._minimum(asset):
            raise InvalidWithdrawRequestError(
                f"Minimum withdrawal is {self._minimum(asset)} {asset.value} units"
            )

        to_address = (to_address or "").strip()
        if not to_address:
            raise InvalidWithdrawRequestError("Destination address is required")
        try:
            parse_address(to_address)
        except AddressParseError as e:
            raise InvalidWithdrawRequestError(f"Invalid destination address: {e}") from e

        async with user_balance_lock(user_id, operation="withdraw"):
            async with get_db() as session:
                repo = LedgerRepository(session)
                await repo.debit(user_id, asset, amount)
                request = await repo.create_withdraw_request(user_id, asset, amount, to_address)

        logger.info(
            f"Withdraw request {request.id} created: user={user_id} "
            f"{amount} {asset.value} -> {to_address}"
        )
        return request

    async def get_withdraw_request(self, request_id: int) -> Optional[WithdrawRequest]:
        async with get_db() as session:
            return await LedgerRepository(session).get_withdraw_request(request_id)

    async def get_user_withdrawals(self, user_id: int, limit: int = 20) -> list[WithdrawRequest]:
        async with get_db() as session:
            return await LedgerRepository(session).get_user_withdrawals(user_id, limit=limit)

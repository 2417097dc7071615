"""Withdrawal state machine.

    CREATED --claim--> PROCESSING --send ok--> CONFIRMED
                           |
                           +--failure, attempts left--> CREATED
                           +--failure, attempts used--> FAILED (+ refund)
                           +--wallet not deployed-----> CREATED (attempt given back)
                           +--stale (crash)-----------> CREATED (attempts kept)

Every transition is a conditional UPDATE on the current status, and each one
runs in its own short database transaction. The claim happens before the
network call and the terminal transition after it, so a crash mid-send
leaves the request PROCESSING until recover_stuck picks it up.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Union

from tonsettle.chain.base import (
    ChainReader,
    ChainUnavailableError,
    ChainWriter,
    WalletNotDeployedError,
)
from tonsettle.config import Settings, get_settings
from tonsettle.ledger.database import get_db
from tonsettle.ledger.models import Asset, UnsupportedAssetError, WithdrawStatus, utcnow
from tonsettle.ledger.repository import LedgerRepository
from tonsettle.ton.wallet import HotWallet
from tonsettle.withdrawal.base import (
    MaxAttemptsExceededError,
    PayoutUnavailableError,
    WithdrawResult,
)

logger = logging.getLogger(__name__)


def _error_text(error: Union[BaseException, str], max_length: int) -> str:
    if isinstance(error, BaseException):
        text = str(error) or error.__class__.__name__
    else:
        text = error
    return text[:max_length]


class WithdrawalEngine:
    """Claims, sends, confirms, retries and refunds withdraw requests."""

    def __init__(
        self,
        reader: ChainReader,
        writer: ChainWriter,
        wallet: Optional[HotWallet],
        settings: Optional[Settings] = None,
    ):
        """Initialize engine.

        Args:
            reader: Chain reader used for the wallet seqno
            writer: Chain writer used to broadcast transfers
            wallet: Hot wallet signing transfers; None disables sending
            settings: Settings override (defaults to get_settings())
        """
        self.reader = reader
        self.writer = writer
        self.wallet = wallet
        self.settings = settings or get_settings()

    @property
    def max_attempts(self) -> int:
        return self.settings.withdraw_max_attempts

    async def claim_batch(self, limit: Optional[int] = None) -> list[int]:
        """Claim up to `limit` CREATED requests, oldest first.

        Each claim is a compare-and-swap on the status, so two claimers can
        never both obtain the same request.
        """
        if limit is None:
            limit = self.settings.withdraw_batch_size
        if limit <= 0:
            return []

        async with get_db() as session:
            repo = LedgerRepository(session)
            candidates = await repo.get_created_withdraw_ids(limit)
            claimed = [rid for rid in candidates if await repo.claim_withdraw(rid)]

        if claimed:
            logger.info(f"Claimed {len(claimed)} withdraw requests for processing: {claimed}")
        return claimed

    async def process_one(self, request_id: int) -> Optional[WithdrawResult]:
        """Send a claimed request. No-op unless it is PROCESSING."""
        async with get_db() as session:
            request = await LedgerRepository(session).get_withdraw_request(request_id)

        if request is None:
            logger.warning(f"Withdraw not found: {request_id}")
            return None
        if request.status != WithdrawStatus.PROCESSING.value:
            logger.warning(f"Withdraw {request_id} is not PROCESSING: {request.status}")
            return None

        logger.info(
            f"Processing withdraw {request_id}: {request.amount} {request.asset} "
            f"-> {request.to_address} (attempt {request.attempts}/{self.max_attempts})"
        )

        try:
            asset = Asset.parse(request.asset)
            if not asset.is_native:
                raise UnsupportedAssetError(f"Only TON withdrawals are supported, got {asset.value}")
            if self.wallet is None:
                raise PayoutUnavailableError("Payout wallet is not configured")

            seqno = await self.reader.get_seqno(self.wallet.address.to_raw())
            boc = self.wallet.build_signed_transfer(
                seqno=seqno,
                destination=request.to_address,
                amount=request.amount,
                validity_seconds=self.settings.transfer_validity_seconds,
            )
            tx_hash = await self.writer.send_boc(boc)
        except WalletNotDeployedError as e:
            logger.error(
                f"Withdraw {request_id}: hot wallet {self.wallet.address.to_raw()} is not "
                f"deployed on chain, fund it to deploy: {e}"
            )
            return await self.defer(request_id, e)
        except Exception as e:
            logger.error(f"Withdraw {request_id} failed: {e.__class__.__name__}: {e}")
            return await self.handle_failure(request_id, e)

        return await self.mark_confirmed(request_id, tx_hash)

    async def wallet_ready(self) -> bool:
        """False while the hot wallet contract is not deployed.

        Only a confirmed "not deployed" answer blocks a pass; other chain
        errors are left to the per-request retry accounting.
        """
        if self.wallet is None:
            return True
        try:
            await self.reader.get_seqno(self.wallet.address.to_raw())
        except WalletNotDeployedError as e:
            logger.error(
                f"Hot wallet {self.wallet.address.to_raw()} is not deployed, "
                f"skipping withdraw pass: {e}"
            )
            return False
        except ChainUnavailableError as e:
            logger.warning(f"Could not check hot wallet state: {e}")
        return True

    async def defer(
        self, request_id: int, error: Union[BaseException, str]
    ) -> Optional[WithdrawResult]:
        """Return a PROCESSING request to CREATED without spending an attempt."""
        message = _error_text(error, self.settings.withdraw_error_max_length)
        async with get_db() as session:
            repo = LedgerRepository(session)
            deferred = await repo.defer_withdraw(request_id, message)
            request = await repo.get_withdraw_request(request_id)

        if request is None:
            return None
        if not deferred:
            return self._unchanged(request, message)

        logger.info(f"Withdraw {request_id} deferred, attempts stay at {request.attempts}")
        return WithdrawResult(
            request_id=request_id,
            status=WithdrawStatus.CREATED,
            attempts=request.attempts,
            error=message,
        )

    async def mark_confirmed(self, request_id: int, tx_hash: str) -> WithdrawResult:
        """PROCESSING -> CONFIRMED with the broadcast hash."""
        async with get_db() as session:
            repo = LedgerRepository(session)
            confirmed = await repo.confirm_withdraw(request_id, tx_hash)
            request = await repo.get_withdraw_request(request_id)

        if not confirmed:
            logger.critical(
                f"Withdraw {request_id} was broadcast as {tx_hash} but is no longer "
                f"PROCESSING ({request.status if request else 'missing'}); reconcile manually"
            )
            return WithdrawResult(
                request_id=request_id,
                status=WithdrawStatus(request.status) if request else WithdrawStatus.FAILED,
                tx_hash=tx_hash,
                attempts=request.attempts if request else 0,
                error="confirmation transition lost",
            )

        logger.info(f"Withdraw {request_id} confirmed. tx_hash={tx_hash}")
        return WithdrawResult(
            request_id=request_id,
            status=WithdrawStatus.CONFIRMED,
            tx_hash=tx_hash,
            attempts=request.attempts,
        )

    async def handle_failure(
        self, request_id: int, error: Union[BaseException, str]
    ) -> Optional[WithdrawResult]:
        """Retry or terminally fail a PROCESSING request.

        With attempts left the request returns to CREATED. Otherwise it
        becomes FAILED and the amount is credited back once. A failing
        refund is logged critical and not raised; the request stays FAILED.
        """
        message = _error_text(error, self.settings.withdraw_error_max_length)

        async with get_db() as session:
            repo = LedgerRepository(session)
            request = await repo.get_withdraw_request(request_id)
            if request is None:
                logger.warning(f"Cannot handle failure - withdraw not found: {request_id}")
                return None

            attempts = request.attempts
            logger.warning(
                f"Withdraw {request_id} failed. attempts={attempts}, "
                f"max_attempts={self.max_attempts}, error={message}"
            )

            if attempts < self.max_attempts:
                if await repo.release_withdraw(request_id, message):
                    logger.info(
                        f"Withdraw {request_id} will be retried "
                        f"(attempt {attempts}/{self.max_attempts}). Returning to CREATED."
                    )
                    return WithdrawResult(
                        request_id=request_id,
                        status=WithdrawStatus.CREATED,
                        attempts=attempts,
                        error=message,
                    )
                return self._unchanged(request, message)

            if not await repo.fail_withdraw(request_id, message):
                return self._unchanged(request, message)
            user_id, asset, amount = request.user_id, request.asset, request.amount

        logger.info(f"{MaxAttemptsExceededError(request_id, attempts, self.max_attempts)}; refunding")
        refunded = await self._refund(request_id, user_id, asset, amount)
        return WithdrawResult(
            request_id=request_id,
            status=WithdrawStatus.FAILED,
            attempts=attempts,
            error=message,
            refunded=refunded,
        )

    @staticmethod
    def _unchanged(request, message: str) -> WithdrawResult:
        logger.warning(
            f"Withdraw {request.id} left {request.status} before failure handling; no change"
        )
        return WithdrawResult(
            request_id=request.id,
            status=WithdrawStatus(request.status),
            tx_hash=request.tx_hash,
            attempts=request.attempts,
            error=message,
        )

    async def _refund(self, request_id: int, user_id: int, asset: str, amount: int) -> bool:
        try:
            async with get_db() as session:
                await LedgerRepository(session).credit(user_id, asset, amount)
        except Exception as refund_error:
            logger.critical(
                f"CRITICAL: Failed to refund balance for withdraw {request_id}. "
                f"user={user_id}, amount={amount} {asset}, error={refund_error}"
            )
            return False

        logger.info(f"Refunded {amount} {asset} to user {user_id} for failed withdraw {request_id}")
        return True

    async def recover_stuck(self, cutoff: Optional[datetime] = None) -> int:
        """Reset PROCESSING requests not touched since `cutoff` to CREATED.

        Attempts are left unchanged. A stale request that already used all of
        its attempts is failed and refunded instead, so attempts never grow
        past max_attempts. Returns the number of requests reset.
        """
        if cutoff is None:
            cutoff = utcnow() - timedelta(minutes=self.settings.withdraw_stuck_timeout_minutes)

        async with get_db() as session:
            stuck = await LedgerRepository(session).get_stuck_withdraws(cutoff)

        if not stuck:
            return 0

        logger.warning(f"Found {len(stuck)} stuck PROCESSING withdraws")
        reset = 0
        for request in stuck:
            if request.attempts >= self.max_attempts:
                await self.handle_failure(
                    request.id,
                    MaxAttemptsExceededError(request.id, request.attempts, self.max_attempts),
                )
                continue

            async with get_db() as session:
                if await LedgerRepository(session).reset_stuck_withdraw(request.id, cutoff):
                    reset += 1
                    logger.info(f"Reset stuck withdraw {request.id} back to CREATED")
        return reset

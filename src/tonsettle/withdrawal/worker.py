"""Withdrawal worker.

Runs the periodic drivers of the withdrawal state machine: a processing
loop (claim a batch, then send each request one after another so wallet
seqnos never race) and a slower recovery loop for stuck requests. An
optional third loop re-verifies pending deposits.

Usage:
    python -m tonsettle.withdrawal.worker
    python -m tonsettle.withdrawal.worker --once
    python -m tonsettle.withdrawal.worker --recover
"""

import argparse
import asyncio
import logging
from typing import Optional

from tonsettle.config import Settings, get_settings
from tonsettle.deposits.service import DepositService
from tonsettle.ledger.database import close_db, init_db
from tonsettle.withdrawal.engine import WithdrawalEngine

logger = logging.getLogger(__name__)


class WithdrawWorker:
    """Periodic driver for the withdrawal engine."""

    def __init__(
        self,
        engine: WithdrawalEngine,
        deposit_service: Optional[DepositService] = None,
        settings: Optional[Settings] = None,
    ):
        self.engine = engine
        self.deposit_service = deposit_service
        self.settings = settings or get_settings()
        self._running = False
        self._stop_event = asyncio.Event()

    async def run_once(self) -> int:
        """Claim one batch and process it sequentially.

        The pass is skipped while the hot wallet is not deployed, so queued
        requests keep their attempts.

        Returns:
            Number of requests confirmed in this pass
        """
        if not await self.engine.wallet_ready():
            return 0

        claimed = await self.engine.claim_batch(self.settings.withdraw_batch_size)
        confirmed = 0
        for request_id in claimed:
            try:
                result = await self.engine.process_one(request_id)
            except Exception as e:
                logger.error(f"Unexpected error processing withdraw {request_id}: {e}")
                continue
            if result is not None and result.success:
                confirmed += 1
        return confirmed

    async def recover_once(self) -> int:
        return await self.engine.recover_stuck()

    async def _loop(self, name: str, step, interval: float) -> None:
        logger.info(f"Starting {name} loop (interval: {interval}s)")
        while self._running:
            try:
                await step()
            except Exception as e:
                logger.error(f"{name} loop error: {e}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info(f"Stopped {name} loop")

    async def run(self) -> None:
        """Run all loops until stop() is called."""
        self._running = True
        self._stop_event.clear()

        loops = [
            self._loop("withdraw", self.run_once, self.settings.withdraw_interval_seconds),
            self._loop(
                "recovery", self.recover_once, self.settings.withdraw_recovery_interval_seconds
            ),
        ]
        if self.deposit_service is not None:
            loops.append(
                self._loop(
                    "deposit-recheck",
                    self.deposit_service.verify_pending_batch,
                    self.settings.deposit_recheck_interval_seconds,
                )
            )
        await asyncio.gather(*loops)

    def stop(self) -> None:
        """Stop all loops after their current step."""
        self._running = False
        self._stop_event.set()
        logger.info("Stopping withdraw worker")


async def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Run the withdrawal worker")
    parser.add_argument("--once", action="store_true", help="Process one batch and exit")
    parser.add_argument(
        "--recover", action="store_true", help="Run stuck-request recovery once and exit"
    )
    args = parser.parse_args()

    settings = get_settings()
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    from tonsettle.chain.factory import get_chain_client
    from tonsettle.withdrawal.factory import get_withdrawal_engine

    await init_db()
    worker = WithdrawWorker(
        get_withdrawal_engine(),
        deposit_service=DepositService(get_chain_client(), settings=settings),
        settings=settings,
    )
    try:
        if args.recover:
            reset = await worker.recover_once()
            print(f"Reset {reset} stuck withdraws")
        elif args.once:
            confirmed = await worker.run_once()
            print(f"Confirmed {confirmed} withdraws")
        else:
            await worker.run()
    finally:
        await close_db()


if __name__ == "__main__":
    asyncio.run(main())

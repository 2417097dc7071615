"""Main entry point - runs the settlement worker loops."""

import asyncio
import logging
import signal

from tonsettle.chain.factory import get_chain_client
from tonsettle.config import get_settings
from tonsettle.deposits.service import DepositService
from tonsettle.ledger.database import close_db, init_db
from tonsettle.withdrawal.factory import get_withdrawal_engine
from tonsettle.withdrawal.worker import WithdrawWorker

logger = logging.getLogger(__name__)


class Application:
    """Main application that runs the withdrawal, recovery and deposit loops."""

    def __init__(self):
        self.settings = get_settings()
        self.worker = None
        self._shutdown_event = asyncio.Event()

    async def start(self):
        """Start all services."""
        log_level = logging.DEBUG if self.settings.debug else logging.INFO
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )

        logger.info("Starting tonsettle...")
        logger.info(f"Environment: {self.settings.environment}")
        logger.info(f"Settings: {self.settings.get_safe_dict()}")

        await init_db()
        logger.info("Database initialized")

        chain = get_chain_client()
        self.worker = WithdrawWorker(
            get_withdrawal_engine(),
            deposit_service=DepositService(chain, settings=self.settings),
            settings=self.settings,
        )
        worker_task = asyncio.create_task(self.worker.run())
        logger.info("Worker task created")

        # Wait for shutdown signal
        await self._shutdown_event.wait()

        self.worker.stop()
        await asyncio.gather(worker_task, return_exceptions=True)

        await self._cleanup()

    async def _cleanup(self):
        """Cleanup resources."""
        logger.info("Cleaning up...")
        await close_db()
        logger.info("Cleanup complete")

    def shutdown(self):
        """Signal shutdown."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()


def main():
    """Main entry point."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    app = Application()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, app.shutdown)

    try:
        loop.run_until_complete(app.start())
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        loop.close()


if __name__ == "__main__":
    main()

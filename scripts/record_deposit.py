#!/usr/bin/env python3
"""Deposit administration.

Records a deposit that was verified by hand, rejects a pending claim, or
re-verifies all pending deposits against the chain.

Usage:
    python scripts/record_deposit.py record <telegram_id> <asset> <amount> <tx_hash>
    python scripts/record_deposit.py reject <deposit_id>
    python scripts/record_deposit.py recheck
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from dotenv import load_dotenv

load_dotenv()

from tonsettle.chain.factory import get_chain_client
from tonsettle.deposits.service import DepositService, DuplicateTransactionError
from tonsettle.ledger.database import close_db, get_db, init_db
from tonsettle.ledger.repository import LedgerRepository

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


async def run(args) -> int:
    await init_db()
    service = DepositService(get_chain_client())
    try:
        if args.command == "record":
            async with get_db() as session:
                user = await LedgerRepository(session).get_user_by_telegram_id(args.telegram_id)
            if user is None:
                logger.error(f"User with telegram_id {args.telegram_id} not found")
                return 1
            try:
                result = await service.record_confirmed_deposit(
                    user.id, args.asset, args.amount, args.tx_hash
                )
            except DuplicateTransactionError as e:
                logger.error(str(e))
                return 1
            logger.info(f"Deposit {result.deposit_id} recorded and credited")

        elif args.command == "reject":
            if not await service.reject_deposit(args.deposit_id):
                logger.error(f"Deposit {args.deposit_id} is not PENDING")
                return 1

        elif args.command == "recheck":
            confirmed = await service.verify_pending_batch()
            logger.info(f"Confirmed {confirmed} pending deposits")
    finally:
        await close_db()
    return 0


def main():
    parser = argparse.ArgumentParser(description="Deposit administration")
    sub = parser.add_subparsers(dest="command", required=True)

    record = sub.add_parser("record", help="Record and credit a verified deposit")
    record.add_argument("telegram_id", type=int)
    record.add_argument("asset")
    record.add_argument("amount", type=int, help="Smallest units (nanoTON, microUSDT)")
    record.add_argument("tx_hash")

    reject = sub.add_parser("reject", help="Reject a pending deposit")
    reject.add_argument("deposit_id", type=int)

    sub.add_parser("recheck", help="Re-verify pending deposits")

    sys.exit(asyncio.run(run(parser.parse_args())))


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""Credit balance to a user directly in database.

Amounts are integers in the asset's smallest unit (nanoTON, microUSDT).

Usage:
    python scripts/credit_balance.py <telegram_id> <asset> <amount>
"""

import asyncio
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from dotenv import load_dotenv
load_dotenv()

from tonsettle.ledger.database import get_db, init_db
from tonsettle.ledger.models import Asset
from tonsettle.ledger.repository import LedgerRepository


async def credit_balance(telegram_id: int, asset: str, amount: int):
    await init_db()
    async with get_db() as session:
        repo = LedgerRepository(session)
        user = await repo.get_user_by_telegram_id(telegram_id)

        if not user:
            print(f"User with telegram_id {telegram_id} not found")
            return

        asset = Asset.parse(asset)
        new_balance = await repo.credit(user_id=user.id, asset=asset, amount=amount)

        print(f"Credited {amount} {asset.value} to user {telegram_id}")
        print(f"New balance: {new_balance} {asset.value}")


if __name__ == "__main__":
    if len(sys.argv) != 4:
        print("Usage: python credit_balance.py <telegram_id> <asset> <amount>")
        print("Example: python credit_balance.py 667100147 TON 500000000")
        sys.exit(1)

    telegram_id = int(sys.argv[1])
    asset = sys.argv[2]
    amount = int(sys.argv[3])

    asyncio.run(credit_balance(telegram_id, asset, amount))

"""Coinflip bets settled in TON.

The stake is debited, the coin flipped, a win credited at 2x and the game
recorded, all in one database transaction.
"""

import logging
import secrets
from typing import Callable, Optional

from tonsettle.ledger.database import get_db
from tonsettle.ledger.models import Asset, CoinflipGame
from tonsettle.ledger.repository import LedgerRepository
from tonsettle.utils.locks import user_balance_lock

logger = logging.getLogger(__name__)

HEADS = "HEADS"
TAILS = "TAILS"
PAYOUT_MULTIPLIER = 2


class InvalidBetError(ValueError):
    """Raised for an unknown side or a non-positive stake."""

    pass


def _secure_flip() -> str:
    return HEADS if secrets.randbelow(2) == 0 else TAILS


class CoinflipService:
    """Plays and settles coinflip games."""

    def __init__(self, flip: Optional[Callable[[], str]] = None):
        self._flip = flip or _secure_flip

    async def play(self, user_id: int, chosen_side: str, stake_nano: int) -> CoinflipGame:
        """Play one game.

        Raises:
            InvalidBetError: bad side or stake
            InsufficientBalanceError: stake exceeds the TON balance
        """
        side = (chosen_side or "").strip().upper()
        if side not in (HEADS, TAILS):
            raise InvalidBetError(f"Invalid side: {chosen_side}. Must be HEADS or TAILS")
        if isinstance(stake_nano, bool) or not isinstance(stake_nano, int) or stake_nano <= 0:
            raise InvalidBetError("Stake must be positive")

        async with user_balance_lock(user_id, operation="coinflip"):
            async with get_db() as session:
                repo = LedgerRepository(session)
                await repo.debit(user_id, Asset.TON, stake_nano)

                result_side = self._flip()
                win = side == result_side
                if win:
                    await repo.credit(user_id, Asset.TON, stake_nano * PAYOUT_MULTIPLIER)

                game = await repo.create_coinflip_game(
                    user_id=user_id,
                    stake_nano=stake_nano,
                    chosen_side=side,
                    result_side=result_side,
                    win=win,
                )

        logger.info(
            f"Coinflip {game.id}: user={user_id} stake={stake_nano} "
            f"{side} vs {result_side} -> {'win' if win else 'loss'}"
        )
        return game

"""Bet settlement on top of the ledger."""

from tonsettle.games.coinflip import CoinflipService, InvalidBetError

__all__ = ["CoinflipService", "InvalidBetError"]

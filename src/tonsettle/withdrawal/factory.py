"""Factory for the withdrawal engine and its collaborators."""

import logging
import secrets
from typing import Optional

from tonsettle.chain.factory import get_chain_client
from tonsettle.config import Settings, get_settings
from tonsettle.ton.wallet import HotWallet, get_hot_wallet
from tonsettle.withdrawal.engine import WithdrawalEngine

logger = logging.getLogger(__name__)

# Cached engine instance
_engine: Optional[WithdrawalEngine] = None


def _resolve_wallet(settings: Settings) -> Optional[HotWallet]:
    wallet = get_hot_wallet()
    if wallet is not None:
        logger.info(f"Hot wallet loaded: {wallet.address.to_friendly(testnet=settings.is_testnet)}")
        return wallet

    if settings.dry_run:
        wallet = HotWallet.from_seed(
            secrets.token_bytes(32),
            subwallet_id=settings.wallet_subwallet_id,
            workchain=settings.wallet_workchain,
        )
        logger.warning(f"DRY_RUN: using ephemeral hot wallet {wallet.address.to_raw()}")
        return wallet

    logger.warning("WALLET_MNEMONIC not set - withdrawals will fail until a wallet is configured")
    return None


def get_withdrawal_engine() -> WithdrawalEngine:
    """Get the withdrawal engine wired to the configured chain client."""
    global _engine
    if _engine is None:
        settings = get_settings()
        chain = get_chain_client()
        _engine = WithdrawalEngine(
            reader=chain,
            writer=chain,
            wallet=_resolve_wallet(settings),
            settings=settings,
        )
    return _engine


def reset_engine_cache() -> None:
    """Clear the cached engine (useful for testing)."""
    global _engine
    _engine = None

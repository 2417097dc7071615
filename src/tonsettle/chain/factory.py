"""Factory for the chain client shared by the deposit and withdrawal paths."""

import logging
from typing import Optional, Union

from tonsettle.chain.base import SimulatedChain
from tonsettle.chain.toncenter import ToncenterClient
from tonsettle.config import get_settings

logger = logging.getLogger(__name__)

ChainClient = Union[ToncenterClient, SimulatedChain]

# Cached client instance
_chain_client: Optional[ChainClient] = None


def get_chain_client() -> ChainClient:
    """Get the configured chain client.

    Returns the in-memory SimulatedChain when DRY_RUN is set.
    """
    global _chain_client
    if _chain_client is not None:
        return _chain_client

    settings = get_settings()
    if settings.dry_run:
        logger.warning("DRY_RUN enabled - using simulated chain, nothing is broadcast")
        _chain_client = SimulatedChain()
    else:
        _chain_client = ToncenterClient(
            base_url=settings.toncenter_base_url,
            v3_url=settings.toncenter_v3_url,
            api_key=settings.toncenter_api_key,
            timeout=settings.chain_timeout_seconds,
        )
    return _chain_client


def reset_chain_client() -> None:
    """Clear the cached client (useful for testing)."""
    global _chain_client
    _chain_client = None

"""Chain access: reader/writer interfaces, toncenter client, simulated chain."""

from tonsettle.chain.base import (
    ChainError,
    ChainReader,
    ChainTransaction,
    ChainUnavailableError,
    ChainWriter,
    SimulatedChain,
    TokenTransfer,
    WalletNotDeployedError,
)
from tonsettle.chain.factory import get_chain_client, reset_chain_client
from tonsettle.chain.toncenter import ToncenterClient

__all__ = [
    "ChainError",
    "ChainReader",
    "ChainTransaction",
    "ChainUnavailableError",
    "ChainWriter",
    "SimulatedChain",
    "TokenTransfer",
    "ToncenterClient",
    "WalletNotDeployedError",
    "get_chain_client",
    "reset_chain_client",
]

"""Base interfaces for reading from and writing to the chain.

Readers return the most recent activity, newest first. Writers broadcast a
serialized external message and report the hash under which it can later
be found.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from tonsettle.ton.address import try_normalize
from tonsettle.ton.cell import Cell

logger = logging.getLogger(__name__)


class ChainError(Exception):
    """Base class for chain access errors."""

    pass


class ChainUnavailableError(ChainError):
    """Timeout, transport failure or unusable response from the chain API."""

    pass


class WalletNotDeployedError(ChainError):
    """The wallet contract has no code on chain yet."""

    pass


@dataclass
class ChainTransaction:
    """A transaction on the deposit address, as seen through its in-message."""

    hash: str
    lt: int
    utime: int
    in_value: Optional[int] = None  # None when there is no in-message
    in_source: Optional[str] = None
    in_destination: Optional[str] = None

    @property
    def has_in_message(self) -> bool:
        return self.in_value is not None


@dataclass
class TokenTransfer:
    """An incoming jetton transfer to the deposit owner."""

    hash: str
    amount: int
    source: Optional[str] = None
    destination: Optional[str] = None
    utime: int = 0


class ChainReader(ABC):
    """Read access to the chain."""

    @abstractmethod
    async def get_transactions(self, address: str, limit: int) -> list[ChainTransaction]:
        """Most recent transactions of an account, newest first.

        Raises:
            ChainUnavailableError: on timeout, transport or API errors
        """
        pass

    @abstractmethod
    async def get_token_transfers(
        self, owner: str, token_master: str, limit: int
    ) -> list[TokenTransfer]:
        """Most recent incoming token transfers to owner, newest first."""
        pass

    @abstractmethod
    async def get_seqno(self, address: str) -> int:
        """Current wallet seqno.

        Raises:
            WalletNotDeployedError: the wallet contract is not initialized
            ChainUnavailableError: on timeout, transport or API errors
        """
        pass


class ChainWriter(ABC):
    """Broadcast access to the chain."""

    @abstractmethod
    async def send_boc(self, boc: bytes) -> str:
        """Broadcast a serialized external message and return its hash."""
        pass


def message_hash(boc: bytes) -> str:
    """Hex hash of the root cell of a BOC."""
    return Cell.from_boc(boc).hash().hex()


class SimulatedChain(ChainReader, ChainWriter):
    """In-memory chain for tests and dry-run mode (no network access)."""

    def __init__(self, auto_deploy: bool = True):
        self.auto_deploy = auto_deploy
        self.unavailable = False
        self._transactions: dict[str, list[ChainTransaction]] = {}
        self._token_transfers: dict[tuple[str, str], list[TokenTransfer]] = {}
        self._seqnos: dict[str, int] = {}
        self.send_errors: list[Exception] = []
        self.sent: list[bytes] = []

    @staticmethod
    def _key(address: str) -> str:
        return try_normalize(address) or address

    def _check_available(self) -> None:
        if self.unavailable:
            raise ChainUnavailableError("Simulated chain is unavailable")

    def add_transaction(self, address: str, tx: ChainTransaction) -> None:
        """Append a transaction as the newest one for address."""
        self._transactions.setdefault(self._key(address), []).insert(0, tx)

    def add_token_transfer(self, owner: str, token_master: str, transfer: TokenTransfer) -> None:
        key = (self._key(owner), self._key(token_master))
        self._token_transfers.setdefault(key, []).insert(0, transfer)

    def deploy(self, address: str, seqno: int = 0) -> None:
        self._seqnos[self._key(address)] = seqno

    async def get_transactions(self, address: str, limit: int) -> list[ChainTransaction]:
        self._check_available()
        return list(self._transactions.get(self._key(address), [])[:limit])

    async def get_token_transfers(
        self, owner: str, token_master: str, limit: int
    ) -> list[TokenTransfer]:
        self._check_available()
        key = (self._key(owner), self._key(token_master))
        return list(self._token_transfers.get(key, [])[:limit])

    async def get_seqno(self, address: str) -> int:
        self._check_available()
        key = self._key(address)
        if key not in self._seqnos:
            if not self.auto_deploy:
                raise WalletNotDeployedError(f"Wallet {address} is not deployed")
            self._seqnos[key] = 0
        return self._seqnos[key]

    async def send_boc(self, boc: bytes) -> str:
        self._check_available()
        if self.send_errors:
            raise self.send_errors.pop(0)

        root = Cell.from_boc(boc)
        body = root.begin_parse()
        body.load_uint(2)
        body.load_address()
        wallet = body.load_address()
        if wallet is not None:
            key = wallet.to_raw()
            self._seqnos[key] = self._seqnos.get(key, 0) + 1

        self.sent.append(boc)
        tx_hash = root.hash().hex()
        logger.info(f"[SIMULATED] Broadcast external message {tx_hash[:16]}...")
        return tx_hash

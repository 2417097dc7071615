"""Matching of a pending deposit against recent chain activity.

The matcher is pure: the caller fetches the candidate list and the set of
hashes already attached to other deposits, and the matcher picks the first
candidate (newest first) that satisfies every check.

Native coin path:
    in-message present, destination equals the deposit address after
    normalization, value equals the claimed amount exactly, and the claimed
    source (if any) equals the in-message source after normalization.

Token path:
    amount equals the claimed amount exactly and the claimed source (if any)
    matches. The feed is already filtered by owner, so the destination is
    not re-checked.

A claimed or observed source that does not parse as an address is treated
as "not checked" rather than as a mismatch.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from tonsettle.chain.base import ChainTransaction, TokenTransfer
from tonsettle.ledger.models import Asset
from tonsettle.ton.address import try_normalize

logger = logging.getLogger(__name__)


@dataclass
class MatchResult:
    """Outcome of a match attempt."""

    matched: bool
    tx_hash: Optional[str] = None
    reason: str = ""


NO_MATCH = MatchResult(matched=False, reason="no matching transaction")


def _source_matches(expected: Optional[str], observed: Optional[str]) -> bool:
    if not expected:
        return True
    expected_norm = try_normalize(expected)
    observed_norm = try_normalize(observed)
    if expected_norm is None or observed_norm is None:
        return True
    return expected_norm == observed_norm


class DepositMatcher:
    """Finds the chain transaction that settles a pending deposit."""

    def __init__(self, deposit_address: Optional[str]):
        self.deposit_address = deposit_address
        self._deposit_address_norm = try_normalize(deposit_address)

    def match(
        self,
        asset: Asset,
        amount: int,
        from_address: Optional[str],
        candidates: Sequence,
        used_hashes: Iterable[str] = (),
    ) -> MatchResult:
        """Dispatch on the asset kind."""
        if asset is Asset.TON:
            return self.match_native(amount, from_address, candidates, used_hashes)
        if asset is Asset.USDT:
            return self.match_token(amount, from_address, candidates, used_hashes)
        return MatchResult(matched=False, reason=f"unsupported asset {asset}")

    def match_native(
        self,
        amount: int,
        from_address: Optional[str],
        transactions: Sequence[ChainTransaction],
        used_hashes: Iterable[str] = (),
    ) -> MatchResult:
        if self._deposit_address_norm is None:
            logger.warning("Deposit address is not configured or invalid, cannot match")
            return MatchResult(matched=False, reason="deposit address not configured")

        used = set(used_hashes)
        for tx in transactions:
            if not tx.has_in_message:
                continue
            if try_normalize(tx.in_destination) != self._deposit_address_norm:
                continue
            if tx.in_value != amount:
                continue
            if not _source_matches(from_address, tx.in_source):
                continue
            if tx.hash in used:
                logger.debug(f"Candidate {tx.hash} already used by another deposit")
                continue
            return MatchResult(matched=True, tx_hash=tx.hash)

        return NO_MATCH

    def match_token(
        self,
        amount: int,
        from_address: Optional[str],
        transfers: Sequence[TokenTransfer],
        used_hashes: Iterable[str] = (),
    ) -> MatchResult:
        used = set(used_hashes)
        for transfer in transfers:
            if transfer.amount != amount:
                continue
            if not _source_matches(from_address, transfer.source):
                continue
            if transfer.hash in used:
                logger.debug(f"Candidate {transfer.hash} already used by another deposit")
                continue
            return MatchResult(matched=True, tx_hash=transfer.hash)

        return NO_MATCH

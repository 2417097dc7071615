"""toncenter HTTP API client.

v2 endpoints serve transactions, get-methods and broadcasts; the v3 indexer
serves jetton transfers. Every transport-level problem (timeout, connection
error, non-2xx status, non-JSON body, ``ok: false``) surfaces as
ChainUnavailableError so callers can treat it as retryable.
"""

import base64
import binascii
import logging
from typing import Any, Optional

import httpx

from tonsettle.chain.base import (
    ChainReader,
    ChainTransaction,
    ChainUnavailableError,
    ChainWriter,
    TokenTransfer,
    WalletNotDeployedError,
    message_hash,
)

logger = logging.getLogger(__name__)

# Exit codes of a get-method call against an account without code
NOT_DEPLOYED_EXIT_CODES = {-13, -14}
NOT_DEPLOYED_MARKERS = ("uninit", "not deployed", "exit code -13", "exit code -14")


class ToncenterClient(ChainReader, ChainWriter):
    """ChainReader/ChainWriter backed by toncenter."""

    def __init__(
        self,
        base_url: str = "https://toncenter.com/api/v2",
        v3_url: str = "https://toncenter.com/api/v3",
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize client.

        Args:
            base_url: v2 API root
            v3_url: v3 indexer root
            api_key: Optional toncenter API key (sent as X-API-Key)
            timeout: Per-request timeout in seconds
            client: Pre-built httpx client (used as-is, not closed here)
        """
        self.base_url = base_url.rstrip("/")
        self.v3_url = v3_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    async def _request(
        self, method: str, url: str, check_status: bool = True, **kwargs: Any
    ) -> dict:
        try:
            if self._client is not None:
                response = await self._client.request(
                    method, url, headers=self._headers(), timeout=self.timeout, **kwargs
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.TimeoutException as e:
            raise ChainUnavailableError(f"toncenter timeout: {url}") from e
        except httpx.HTTPError as e:
            raise ChainUnavailableError(f"toncenter transport error: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise ChainUnavailableError(
                f"toncenter returned non-JSON response (HTTP {response.status_code})"
            ) from e

        if check_status and response.status_code >= 400:
            error = data.get("error") if isinstance(data, dict) else None
            raise ChainUnavailableError(
                f"toncenter HTTP {response.status_code}: {error or response.text[:200]}"
            )
        if not isinstance(data, dict):
            raise ChainUnavailableError("toncenter returned unexpected payload")
        return data

    async def _v2(self, method: str, path: str, **kwargs: Any) -> Any:
        data = await self._request(method, f"{self.base_url}/{path}", **kwargs)
        if not data.get("ok", False):
            raise ChainUnavailableError(f"toncenter error: {data.get('error', 'unknown')}")
        return data.get("result")

    async def get_transactions(self, address: str, limit: int) -> list[ChainTransaction]:
        result = await self._v2(
            "GET", "getTransactions", params={"address": address, "limit": limit}
        )
        transactions = []
        for raw in result or []:
            try:
                transactions.append(self._parse_transaction(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unparseable transaction: {e}")
        return transactions

    @staticmethod
    def _parse_transaction(raw: dict) -> ChainTransaction:
        tx_id = raw["transaction_id"]
        in_msg = raw.get("in_msg") or None

        in_value = None
        in_source = None
        in_destination = None
        if in_msg is not None:
            value = in_msg.get("value")
            in_value = int(value) if value not in (None, "") else None
            in_source = in_msg.get("source") or None
            in_destination = in_msg.get("destination") or None

        return ChainTransaction(
            hash=tx_id["hash"],
            lt=int(tx_id.get("lt", 0)),
            utime=int(raw.get("utime", 0)),
            in_value=in_value,
            in_source=in_source,
            in_destination=in_destination,
        )

    async def get_token_transfers(
        self, owner: str, token_master: str, limit: int
    ) -> list[TokenTransfer]:
        data = await self._request(
            "GET",
            f"{self.v3_url}/jetton/transfers",
            params={
                "owner_address": owner,
                "jetton_master": token_master,
                "direction": "in",
                "limit": limit,
                "sort": "desc",
            },
        )
        transfers = []
        for raw in data.get("jetton_transfers") or []:
            try:
                transfers.append(
                    TokenTransfer(
                        hash=raw["transaction_hash"],
                        amount=int(raw["amount"]),
                        source=raw.get("source") or None,
                        destination=raw.get("destination") or None,
                        utime=int(raw.get("transaction_now") or 0),
                    )
                )
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unparseable jetton transfer: {e}")
        return transfers

    async def get_seqno(self, address: str) -> int:
        data = await self._request(
            "POST",
            f"{self.base_url}/runGetMethod",
            check_status=False,
            json={"address": address, "method": "seqno", "stack": []},
        )
        if not data.get("ok", False):
            error = str(data.get("error", ""))
            if any(marker in error.lower() for marker in NOT_DEPLOYED_MARKERS):
                raise WalletNotDeployedError(f"Wallet {address} is not deployed: {error}")
            raise ChainUnavailableError(f"toncenter error: {error or 'unknown'}")

        result = data.get("result") or {}
        exit_code = int(result.get("exit_code", 0))
        if exit_code in NOT_DEPLOYED_EXIT_CODES:
            raise WalletNotDeployedError(f"Wallet {address} is not deployed (exit code {exit_code})")
        if exit_code != 0:
            raise ChainUnavailableError(f"seqno get-method failed with exit code {exit_code}")

        stack = result.get("stack") or []
        try:
            kind, value = stack[0][0], stack[0][1]
            # Stack format: [["num", "0x..."]]
            if kind == "num":
                return int(value, 16) if str(value).startswith(("0x", "-0x")) else int(value)
            return int(value)
        except (IndexError, TypeError, ValueError) as e:
            raise ChainUnavailableError(f"Unexpected seqno stack: {stack}") from e

    async def send_boc(self, boc: bytes) -> str:
        result = await self._v2(
            "POST",
            "sendBocReturnHash",
            json={"boc": base64.b64encode(boc).decode()},
        )
        returned = result.get("hash") if isinstance(result, dict) else None
        tx_hash = _hash_to_hex(returned) if returned else None
        if tx_hash is None:
            tx_hash = message_hash(boc)
        logger.info(f"Broadcast external message {tx_hash[:16]}...")
        return tx_hash


def _hash_to_hex(value: str) -> Optional[str]:
    """toncenter hashes come as base64 or hex; store them as hex."""
    if len(value) == 64:
        try:
            bytes.fromhex(value)
            return value.lower()
        except ValueError:
            pass
    try:
        raw = base64.b64decode(value.replace("-", "+").replace("_", "/") + "=" * (-len(value) % 4))
    except (binascii.Error, ValueError):
        return None
    return raw.hex() if len(raw) == 32 else None

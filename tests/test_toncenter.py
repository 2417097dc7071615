"""Tests for the toncenter client against a mocked transport."""

import base64
import json

import httpx
import pytest

from tonsettle.chain.base import ChainUnavailableError, WalletNotDeployedError
from tonsettle.chain.toncenter import ToncenterClient
from tonsettle.ton.cell import Builder

ADDRESS = "0:" + "ab" * 32


def make_client(handler, api_key=None) -> ToncenterClient:
    transport = httpx.MockTransport(handler)
    return ToncenterClient(
        base_url="https://toncenter.test/api/v2",
        v3_url="https://toncenter.test/api/v3",
        api_key=api_key,
        timeout=5.0,
        client=httpx.AsyncClient(transport=transport),
    )


def seqno_response(payload: dict, status_code: int = 200):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/v2/runGetMethod"
        assert json.loads(request.content)["method"] == "seqno"
        return httpx.Response(status_code, json=payload)

    return handler


class TestTransactions:
    """Tests for getTransactions parsing."""

    @pytest.mark.asyncio
    async def test_parses_in_messages(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["params"] = dict(request.url.params)
            seen["api_key"] = request.headers.get("X-API-Key")
            return httpx.Response(
                200,
                json={
                    "ok": True,
                    "result": [
                        {
                            "transaction_id": {"hash": "h1", "lt": "100"},
                            "utime": 1_700_000_000,
                            "in_msg": {
                                "value": "1000000000",
                                "source": "EQsender",
                                "destination": ADDRESS,
                            },
                        },
                        {
                            "transaction_id": {"hash": "h2", "lt": "99"},
                            "utime": 1_699_999_999,
                            "in_msg": None,
                        },
                        {"utime": 1},
                    ],
                },
            )

        client = make_client(handler, api_key="secret")
        txs = await client.get_transactions(ADDRESS, 20)

        assert seen["params"] == {"address": ADDRESS, "limit": "20"}
        assert seen["api_key"] == "secret"
        assert [tx.hash for tx in txs] == ["h1", "h2"]
        assert txs[0].in_value == 1_000_000_000
        assert txs[0].in_source == "EQsender"
        assert txs[0].lt == 100
        assert not txs[1].has_in_message

    @pytest.mark.asyncio
    async def test_not_ok_is_unavailable(self):
        client = make_client(lambda request: httpx.Response(200, json={"ok": False, "error": "rate limit"}))
        with pytest.raises(ChainUnavailableError, match="rate limit"):
            await client.get_transactions(ADDRESS, 20)

    @pytest.mark.asyncio
    async def test_http_error_is_unavailable(self):
        client = make_client(lambda request: httpx.Response(502, json={"error": "bad gateway"}))
        with pytest.raises(ChainUnavailableError, match="502"):
            await client.get_transactions(ADDRESS, 20)

    @pytest.mark.asyncio
    async def test_non_json_is_unavailable(self):
        client = make_client(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(ChainUnavailableError):
            await client.get_transactions(ADDRESS, 20)

    @pytest.mark.asyncio
    async def test_timeout_is_unavailable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        client = make_client(handler)
        with pytest.raises(ChainUnavailableError, match="timeout"):
            await client.get_transactions(ADDRESS, 20)


class TestTokenTransfers:
    """Tests for the v3 jetton transfer feed."""

    @pytest.mark.asyncio
    async def test_parses_transfers(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/v3/jetton/transfers"
            assert request.url.params["owner_address"] == ADDRESS
            assert request.url.params["direction"] == "in"
            return httpx.Response(
                200,
                json={
                    "jetton_transfers": [
                        {
                            "transaction_hash": "jt1",
                            "amount": "25000000",
                            "source": "0:" + "01" * 32,
                            "destination": ADDRESS,
                            "transaction_now": 1_700_000_000,
                        },
                        {"transaction_hash": "bad", "amount": "n/a"},
                    ]
                },
            )

        transfers = await make_client(handler).get_token_transfers(ADDRESS, "EQmaster", 50)

        assert len(transfers) == 1
        assert transfers[0].hash == "jt1"
        assert transfers[0].amount == 25_000_000


class TestSeqno:
    """Tests for the seqno get-method."""

    @pytest.mark.asyncio
    async def test_hex_stack_value(self):
        handler = seqno_response(
            {"ok": True, "result": {"exit_code": 0, "stack": [["num", "0x1f"]]}}
        )
        assert await make_client(handler).get_seqno(ADDRESS) == 31

    @pytest.mark.asyncio
    async def test_not_deployed_exit_code(self):
        handler = seqno_response({"ok": True, "result": {"exit_code": -13, "stack": []}})
        with pytest.raises(WalletNotDeployedError):
            await make_client(handler).get_seqno(ADDRESS)

    @pytest.mark.asyncio
    async def test_not_deployed_error_body(self):
        handler = seqno_response(
            {"ok": False, "error": "LITE_SERVER_UNKNOWN: account is uninit"}, status_code=500
        )
        with pytest.raises(WalletNotDeployedError):
            await make_client(handler).get_seqno(ADDRESS)

    @pytest.mark.asyncio
    async def test_other_error_is_unavailable(self):
        handler = seqno_response({"ok": False, "error": "rate limit exceeded"}, status_code=429)
        with pytest.raises(ChainUnavailableError):
            await make_client(handler).get_seqno(ADDRESS)

    @pytest.mark.asyncio
    async def test_unexpected_stack(self):
        handler = seqno_response({"ok": True, "result": {"exit_code": 0, "stack": []}})
        with pytest.raises(ChainUnavailableError):
            await make_client(handler).get_seqno(ADDRESS)


class TestSendBoc:
    """Tests for broadcasting."""

    @pytest.mark.asyncio
    async def test_returns_hex_of_base64_hash(self):
        boc = Builder().store_uint(1, 8).end_cell().to_boc()
        digest = bytes(range(32))
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["boc"] = json.loads(request.content)["boc"]
            return httpx.Response(
                200, json={"ok": True, "result": {"hash": base64.b64encode(digest).decode()}}
            )

        assert await make_client(handler).send_boc(boc) == digest.hex()
        assert base64.b64decode(seen["boc"]) == boc

    @pytest.mark.asyncio
    async def test_falls_back_to_message_hash(self):
        cell = Builder().store_uint(1, 8).end_cell()

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"ok": True, "result": {"@type": "ok"}})

        assert await make_client(handler).send_boc(cell.to_boc()) == cell.hash().hex()

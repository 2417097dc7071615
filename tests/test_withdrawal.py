"""Tests for withdraw requests, the withdrawal engine and the worker."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update

from tonsettle.chain.base import ChainUnavailableError, SimulatedChain
from tonsettle.ledger.database import get_db
from tonsettle.ledger.models import Asset, WithdrawRequest, WithdrawStatus, utcnow
from tonsettle.ledger.repository import InsufficientBalanceError, LedgerRepository
from tonsettle.ton.address import Address
from tonsettle.ton.cell import Cell
from tonsettle.withdrawal.base import InvalidWithdrawRequestError
from tonsettle.withdrawal.engine import WithdrawalEngine
from tonsettle.withdrawal.service import WithdrawService
from tonsettle.withdrawal.worker import WithdrawWorker

DESTINATION = Address(0, bytes.fromhex("11" * 32)).to_friendly(bounceable=False)
AMOUNT = 500_000_000


async def fund(user_id: int, asset: Asset, amount: int) -> None:
    async with get_db() as session:
        await LedgerRepository(session).credit(user_id, asset, amount)


async def balance_of(user_id: int, asset: Asset = Asset.TON) -> int:
    async with get_db() as session:
        return (await LedgerRepository(session).get_balance(user_id)).amount_of(asset)


async def load(request_id: int) -> WithdrawRequest:
    async with get_db() as session:
        return await LedgerRepository(session).get_withdraw_request(request_id)


async def age_request(request_id: int, minutes: int) -> None:
    async with get_db() as session:
        await session.execute(
            update(WithdrawRequest)
            .where(WithdrawRequest.id == request_id)
            .values(updated_at=utcnow() - timedelta(minutes=minutes))
        )


@pytest.fixture
def withdraw_service(settings) -> WithdrawService:
    return WithdrawService(settings=settings)


@pytest.fixture
def engine(chain, wallet, settings) -> WithdrawalEngine:
    return WithdrawalEngine(chain, chain, wallet, settings=settings)


class TestCreateWithdrawRequest:
    """Tests for request creation."""

    @pytest.mark.asyncio
    async def test_create_debits_balance(self, withdraw_service, user_id):
        await fund(user_id, Asset.TON, 1_000_000_000)

        request = await withdraw_service.create_withdraw_request(
            user_id, Asset.TON, AMOUNT, DESTINATION
        )

        assert request.status == WithdrawStatus.CREATED.value
        assert request.attempts == 0
        assert await balance_of(user_id) == 500_000_000

    @pytest.mark.asyncio
    async def test_insufficient_balance_stores_nothing(self, withdraw_service, user_id):
        await fund(user_id, Asset.TON, 100_000_000)

        with pytest.raises(InsufficientBalanceError):
            await withdraw_service.create_withdraw_request(user_id, Asset.TON, AMOUNT, DESTINATION)

        assert await withdraw_service.get_user_withdrawals(user_id) == []
        assert await balance_of(user_id) == 100_000_000

    @pytest.mark.asyncio
    @pytest.mark.parametrize("address", ["", "   ", "not-an-address", "0:1234"])
    async def test_invalid_destination(self, withdraw_service, user_id, address):
        await fund(user_id, Asset.TON, 1_000_000_000)

        with pytest.raises(InvalidWithdrawRequestError):
            await withdraw_service.create_withdraw_request(user_id, Asset.TON, AMOUNT, address)

        assert await balance_of(user_id) == 1_000_000_000

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -1, 1_000, 2**63])
    async def test_invalid_amount(self, withdraw_service, user_id, amount):
        await fund(user_id, Asset.TON, 1_000_000_000)

        with pytest.raises(InvalidWithdrawRequestError):
            await withdraw_service.create_withdraw_request(user_id, Asset.TON, amount, DESTINATION)


class TestClaim:
    """Tests for claiming CREATED requests."""

    @pytest.mark.asyncio
    async def test_claims_oldest_first_up_to_limit(self, withdraw_service, engine, user_id):
        await fund(user_id, Asset.TON, 5 * AMOUNT)
        ids = [
            (await withdraw_service.create_withdraw_request(user_id, "TON", AMOUNT, DESTINATION)).id
            for _ in range(3)
        ]

        assert await engine.claim_batch(limit=2) == ids[:2]
        assert await engine.claim_batch(limit=2) == ids[2:]
        assert await engine.claim_batch(limit=2) == []

        request = await load(ids[0])
        assert request.status == WithdrawStatus.PROCESSING.value
        assert request.attempts == 1

    @pytest.mark.asyncio
    async def test_concurrent_claims_are_disjoint(
        self, withdraw_service, chain, wallet, settings, user_id
    ):
        await fund(user_id, Asset.TON, 4 * AMOUNT)
        ids = [
            (await withdraw_service.create_withdraw_request(user_id, "TON", AMOUNT, DESTINATION)).id
            for _ in range(4)
        ]
        first = WithdrawalEngine(chain, chain, wallet, settings=settings)
        second = WithdrawalEngine(chain, chain, wallet, settings=settings)

        claimed_a, claimed_b = await asyncio.gather(
            first.claim_batch(limit=4), second.claim_batch(limit=4)
        )

        assert set(claimed_a).isdisjoint(claimed_b)
        assert sorted(claimed_a + claimed_b) == ids
        for request_id in ids:
            assert (await load(request_id)).attempts == 1

    @pytest.mark.asyncio
    async def test_zero_limit_claims_nothing(self, withdraw_service, engine, user_id):
        await fund(user_id, Asset.TON, AMOUNT)
        await withdraw_service.create_withdraw_request(user_id, Asset.TON, AMOUNT, DESTINATION)

        assert await engine.claim_batch(limit=0) == []


class TestProcessing:
    """Tests for sending, retrying and failing requests."""

    async def _claimed(self, withdraw_service, engine, user_id, asset=Asset.TON, amount=AMOUNT):
        await fund(user_id, asset, amount)
        request = await withdraw_service.create_withdraw_request(user_id, asset, amount, DESTINATION)
        assert await engine.claim_batch() == [request.id]
        return request.id

    @pytest.mark.asyncio
    async def test_success_confirms_with_hash(
        self, withdraw_service, engine, chain: SimulatedChain, wallet, user_id
    ):
        chain.deploy(wallet.address.to_raw(), seqno=4)
        request_id = await self._claimed(withdraw_service, engine, user_id)

        result = await engine.process_one(request_id)

        assert result.success
        assert len(chain.sent) == 1
        assert result.tx_hash == Cell.from_boc(chain.sent[0]).hash().hex()
        assert await chain.get_seqno(wallet.address.to_raw()) == 5

        request = await load(request_id)
        assert request.status == WithdrawStatus.CONFIRMED.value
        assert request.tx_hash == result.tx_hash
        assert request.processed_at is not None
        assert await balance_of(user_id) == 0

    @pytest.mark.asyncio
    async def test_failure_with_attempts_left_returns_to_created(
        self, withdraw_service, engine, chain, user_id
    ):
        chain.send_errors.append(ChainUnavailableError("Toncenter timeout"))
        request_id = await self._claimed(withdraw_service, engine, user_id)

        result = await engine.process_one(request_id)

        assert result.status == WithdrawStatus.CREATED
        request = await load(request_id)
        assert request.status == WithdrawStatus.CREATED.value
        assert request.attempts == 1
        assert request.last_error == "Toncenter timeout"
        assert await balance_of(user_id) == 0

    @pytest.mark.asyncio
    async def test_exhausted_attempts_fail_and_refund(
        self, withdraw_service, engine, chain, user_id
    ):
        chain.unavailable = True
        request_id = await self._claimed(withdraw_service, engine, user_id)

        first = await engine.process_one(request_id)
        assert first.status == WithdrawStatus.CREATED
        for _ in range(2):
            assert await engine.claim_batch() == [request_id]
            result = await engine.process_one(request_id)

        assert result.status == WithdrawStatus.FAILED
        assert result.refunded
        request = await load(request_id)
        assert request.status == WithdrawStatus.FAILED.value
        assert request.attempts == 3
        assert request.processed_at is not None
        assert await balance_of(user_id) == AMOUNT

        # a FAILED request is never claimed or refunded again
        assert await engine.claim_batch() == []
        assert await engine.handle_failure(request_id, "late") is not None
        assert await balance_of(user_id) == AMOUNT

    @pytest.mark.asyncio
    async def test_wallet_not_deployed(self, withdraw_service, wallet, settings, user_id):
        chain = SimulatedChain(auto_deploy=False)
        engine = WithdrawalEngine(chain, chain, wallet, settings=settings)
        request_id = await self._claimed(withdraw_service, engine, user_id)

        result = await engine.process_one(request_id)

        assert result.status == WithdrawStatus.CREATED
        stored = await load(request_id)
        assert "not deployed" in stored.last_error
        assert stored.attempts == 0
        assert chain.sent == []

    @pytest.mark.asyncio
    async def test_process_is_noop_unless_processing(self, withdraw_service, engine, chain, user_id):
        await fund(user_id, Asset.TON, AMOUNT)
        request = await withdraw_service.create_withdraw_request(
            user_id, Asset.TON, AMOUNT, DESTINATION
        )

        assert await engine.process_one(request.id) is None
        assert await engine.process_one(98765) is None
        assert chain.sent == []
        assert (await load(request.id)).status == WithdrawStatus.CREATED.value

    @pytest.mark.asyncio
    async def test_refund_failure_is_swallowed(
        self, withdraw_service, engine, chain, user_id, monkeypatch
    ):
        chain.unavailable = True
        request_id = await self._claimed(withdraw_service, engine, user_id)
        for _ in range(2):
            await engine.process_one(request_id)
            await engine.claim_batch()

        async def broken_credit(self, user_id, asset, amount):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(LedgerRepository, "credit", broken_credit)
        result = await engine.process_one(request_id)

        assert result.status == WithdrawStatus.FAILED
        assert not result.refunded
        assert (await load(request_id)).status == WithdrawStatus.FAILED.value
        assert await balance_of(user_id) == 0

    @pytest.mark.asyncio
    async def test_token_withdraw_refunded_in_token(
        self, withdraw_service, engine, chain, user_id
    ):
        request_id = await self._claimed(
            withdraw_service, engine, user_id, asset=Asset.USDT, amount=5_000_000
        )
        for _ in range(2):
            await engine.process_one(request_id)
            await engine.claim_batch()
        result = await engine.process_one(request_id)

        assert result.status == WithdrawStatus.FAILED
        assert "USDT" in result.error
        assert chain.sent == []
        assert await balance_of(user_id, Asset.USDT) == 5_000_000
        assert await balance_of(user_id, Asset.TON) == 0

    @pytest.mark.asyncio
    async def test_missing_wallet(self, withdraw_service, chain, settings, user_id):
        engine = WithdrawalEngine(chain, chain, None, settings=settings)
        request_id = await self._claimed(withdraw_service, engine, user_id)

        result = await engine.process_one(request_id)

        assert result.status == WithdrawStatus.CREATED
        assert "not configured" in result.error


class TestRecovery:
    """Tests for stuck PROCESSING requests."""

    @pytest.mark.asyncio
    async def test_stale_request_reset_to_created(self, withdraw_service, engine, user_id):
        await fund(user_id, Asset.TON, AMOUNT)
        request = await withdraw_service.create_withdraw_request(
            user_id, Asset.TON, AMOUNT, DESTINATION
        )
        await engine.claim_batch()
        await age_request(request.id, minutes=15)

        assert await engine.recover_stuck() == 1

        stored = await load(request.id)
        assert stored.status == WithdrawStatus.CREATED.value
        assert stored.attempts == 1

    @pytest.mark.asyncio
    async def test_fresh_request_left_alone(self, withdraw_service, engine, user_id):
        await fund(user_id, Asset.TON, AMOUNT)
        request = await withdraw_service.create_withdraw_request(
            user_id, Asset.TON, AMOUNT, DESTINATION
        )
        await engine.claim_batch()

        assert await engine.recover_stuck() == 0
        assert (await load(request.id)).status == WithdrawStatus.PROCESSING.value

    @pytest.mark.asyncio
    async def test_stale_request_at_max_attempts_fails(
        self, withdraw_service, engine, chain, user_id
    ):
        chain.unavailable = True
        await fund(user_id, Asset.TON, AMOUNT)
        request = await withdraw_service.create_withdraw_request(
            user_id, Asset.TON, AMOUNT, DESTINATION
        )
        for _ in range(2):
            await engine.claim_batch()
            await engine.process_one(request.id)
        await engine.claim_batch()
        await age_request(request.id, minutes=15)

        assert await engine.recover_stuck() == 0

        stored = await load(request.id)
        assert stored.status == WithdrawStatus.FAILED.value
        assert stored.attempts == 3
        assert await balance_of(user_id) == AMOUNT


class TestWorker:
    """Tests for the worker driver."""

    @pytest.mark.asyncio
    async def test_run_once_processes_batch(self, withdraw_service, engine, chain, settings, user_id):
        await fund(user_id, Asset.TON, 2 * AMOUNT)
        for _ in range(2):
            await withdraw_service.create_withdraw_request(user_id, Asset.TON, AMOUNT, DESTINATION)

        worker = WithdrawWorker(engine, settings=settings)

        assert await worker.run_once() == 2
        assert len(chain.sent) == 2
        assert await worker.run_once() == 0

    @pytest.mark.asyncio
    async def test_sequential_sends_use_increasing_seqnos(
        self, withdraw_service, engine, chain, wallet, settings, user_id
    ):
        await fund(user_id, Asset.TON, 2 * AMOUNT)
        for _ in range(2):
            await withdraw_service.create_withdraw_request(user_id, Asset.TON, AMOUNT, DESTINATION)

        await WithdrawWorker(engine, settings=settings).run_once()

        seqnos = []
        for boc in chain.sent:
            ext = Cell.from_boc(boc).begin_parse()
            ext.load_uint(2)
            ext.load_address()
            ext.load_address()
            ext.load_coins()
            ext.load_bit()
            ext.load_bit()
            body = ext.load_ref().begin_parse()
            body.load_bytes(64 + 4 + 4)
            seqnos.append(body.load_uint(32))
        assert seqnos == [0, 1]

    @pytest.mark.asyncio
    async def test_undeployed_wallet_keeps_queue_intact(
        self, withdraw_service, wallet, settings, user_id
    ):
        chain = SimulatedChain(auto_deploy=False)
        engine = WithdrawalEngine(chain, chain, wallet, settings=settings)
        worker = WithdrawWorker(engine, settings=settings)
        await fund(user_id, Asset.TON, 3 * AMOUNT)
        ids = [
            (await withdraw_service.create_withdraw_request(user_id, "TON", AMOUNT, DESTINATION)).id
            for _ in range(3)
        ]

        for _ in range(settings.withdraw_max_attempts + 1):
            assert await worker.run_once() == 0

        for request_id in ids:
            request = await load(request_id)
            assert request.status == WithdrawStatus.CREATED.value
            assert request.attempts == 0
        assert chain.sent == []
        assert await balance_of(user_id) == 0

        chain.deploy(wallet.address.to_raw())
        assert await worker.run_once() == 3

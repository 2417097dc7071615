"""Tests for keyed locks."""

import asyncio

import pytest

from tonsettle.utils.locks import (
    LockTimeoutError,
    active_lock_count,
    deposit_lock,
    keyed_lock,
    user_balance_lock,
)


class TestKeyedLock:
    """Tests for keyed_lock."""

    @pytest.mark.asyncio
    async def test_same_key_serializes(self):
        order = []

        async def worker(name: str):
            async with keyed_lock("user:1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]
        assert active_lock_count() == 0

    @pytest.mark.asyncio
    async def test_timeout(self):
        async with user_balance_lock(7):
            with pytest.raises(LockTimeoutError):
                async with user_balance_lock(7, timeout=0.01):
                    pass
            # the holder still owns the entry after the waiter gave up
            assert active_lock_count() == 1

        assert active_lock_count() == 0
        async with user_balance_lock(7, timeout=0.01):
            pass

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        with pytest.raises(RuntimeError):
            async with keyed_lock("deposit:3"):
                raise RuntimeError("boom")

        assert active_lock_count() == 0
        async with keyed_lock("deposit:3", timeout=0.01):
            pass


class TestRegistryCleanup:
    """Lock entries do not outlive their users."""

    @pytest.mark.asyncio
    async def test_many_deposits_leave_no_entries(self):
        for deposit_id in range(200):
            async with deposit_lock(deposit_id):
                pass

        assert active_lock_count() == 0

    @pytest.mark.asyncio
    async def test_entry_kept_while_waiter_queued(self):
        release = asyncio.Event()

        async def holder():
            async with keyed_lock("user:5"):
                await release.wait()

        async def waiter():
            async with keyed_lock("user:5"):
                pass

        tasks = [asyncio.create_task(holder()), asyncio.create_task(waiter())]
        await asyncio.sleep(0.01)
        assert active_lock_count() == 1

        release.set()
        await asyncio.gather(*tasks)
        assert active_lock_count() == 0

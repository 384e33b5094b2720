"""Tests for per-chain signer locks and backoff."""

import asyncio

import pytest

from bridgerelay.utils.locks import LockTimeoutError, get_signer_lock, signer_lock
from bridgerelay.utils.retry import Backoff


class TestSignerLock:
    """Serialization of admin submissions per chain."""

    @pytest.mark.asyncio
    async def test_same_chain_returns_same_lock(self):
        assert await get_signer_lock("evm") is await get_signer_lock("evm")
        assert await get_signer_lock("evm") is not await get_signer_lock("solana")

    @pytest.mark.asyncio
    async def test_same_chain_serialized(self):
        active = 0
        peak = 0

        async def submit():
            nonlocal active, peak
            async with signer_lock("evm", operation="release"):
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1

        await asyncio.gather(*(submit() for _ in range(5)))

        assert peak == 1

    @pytest.mark.asyncio
    async def test_different_chains_independent(self):
        async with signer_lock("evm"):
            async with signer_lock("solana", timeout=0.1):
                pass

    @pytest.mark.asyncio
    async def test_timeout(self):
        async with signer_lock("evm"):
            with pytest.raises(LockTimeoutError):
                async with signer_lock("evm", timeout=0.05):
                    pass

    @pytest.mark.asyncio
    async def test_released_after_error(self):
        with pytest.raises(RuntimeError):
            async with signer_lock("evm"):
                raise RuntimeError("boom")

        lock = await get_signer_lock("evm")
        assert not lock.locked()


class TestBackoff:
    def test_exponential_growth(self):
        backoff = Backoff(base_delay=1, max_delay=100, jitter=0)
        assert [backoff.delay(n) for n in range(1, 5)] == [1, 2, 4, 8]

    def test_capped(self):
        assert Backoff(base_delay=1, max_delay=5, jitter=0).delay(10) == 5

    def test_jitter_bounded(self):
        backoff = Backoff(base_delay=1, max_delay=100, jitter=0.5)
        for _ in range(20):
            assert 1 <= backoff.delay(1) <= 1.5

"""Unit tests for the advisory lock registry."""

import asyncio

import pytest

from specster.errors import AcquireLockError
from specster.locks import LockRegistry


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestLockRegistry:
    """Test cases for LockRegistry."""

    @pytest.mark.asyncio
    async def test_acquire_and_release(self):
        """A released lock can be taken again."""
        locks = LockRegistry(timeout=1.0, poll_interval=0.01)

        token = await locks.acquire("checkout")
        assert locks.is_locked("checkout")
        assert locks.release("checkout", token)
        assert not locks.is_locked("checkout")

    @pytest.mark.asyncio
    async def test_release_requires_owner_token(self):
        """A stale token cannot release someone else's lock."""
        locks = LockRegistry(timeout=1.0, poll_interval=0.01)
        await locks.acquire("checkout")

        assert not locks.release("checkout", "not-the-owner")
        assert locks.is_locked("checkout")

    @pytest.mark.asyncio
    async def test_timeout_raises(self):
        """Waiting past the timeout raises AcquireLockError."""
        locks = LockRegistry(timeout=5.0, poll_interval=0.01)
        await locks.acquire("checkout")

        with pytest.raises(AcquireLockError):
            await locks.acquire("checkout", timeout=0.05)

    @pytest.mark.asyncio
    async def test_names_are_independent(self):
        """Holding one name does not block another."""
        locks = LockRegistry(timeout=1.0, poll_interval=0.01)
        await locks.acquire("checkout")

        token = await asyncio.wait_for(locks.acquire("billing"), timeout=0.5)
        assert token

    @pytest.mark.asyncio
    async def test_abandoned_lock_is_reclaimed(self):
        """An entry older than the timeout is taken over."""
        clock = FakeClock()
        locks = LockRegistry(timeout=30.0, poll_interval=0.01, clock=clock)
        old_token = await locks.acquire("checkout")

        clock.now = 31.0
        assert not locks.is_locked("checkout")
        new_token = await locks.acquire("checkout")

        assert new_token != old_token
        assert not locks.release("checkout", old_token)
        assert locks.release("checkout", new_token)

    @pytest.mark.asyncio
    async def test_hold_serializes_critical_sections(self):
        """Sections under hold never overlap for the same name."""
        locks = LockRegistry(timeout=5.0, poll_interval=0.005)
        active = 0
        overlaps = 0

        async def section():
            nonlocal active, overlaps
            async with locks.hold("checkout"):
                active += 1
                if active > 1:
                    overlaps += 1
                await asyncio.sleep(0.01)
                active -= 1

        await asyncio.gather(*(section() for _ in range(5)))

        assert overlaps == 0
        assert not locks.is_locked("checkout")

    @pytest.mark.asyncio
    async def test_hold_releases_on_error(self):
        """The lock is released when the body raises."""
        locks = LockRegistry(timeout=1.0, poll_interval=0.01)

        with pytest.raises(RuntimeError):
            async with locks.hold("checkout"):
                raise RuntimeError("boom")

        assert not locks.is_locked("checkout")

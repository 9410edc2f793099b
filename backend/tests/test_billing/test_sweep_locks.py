"""Tests for sweep run-lock leases."""

import pytest
from sqlalchemy import select

from subscription_engine.billing.exceptions import DependencyUnavailableError, ErrorKind, SweepInProgressError
from subscription_engine.billing.locks import acquire_lease, release_lease, sweep_lock
from subscription_engine.models.sweep import SweepLock


class TestLeases:
    async def test_second_holder_is_refused(self, session_factory, clock):
        assert await acquire_lease(session_factory, "expiration", "worker-a", clock, 60)
        assert not await acquire_lease(session_factory, "expiration", "worker-b", clock, 60)

    async def test_different_sweeps_do_not_conflict(self, session_factory, clock):
        assert await acquire_lease(session_factory, "expiration", "worker-a", clock, 60)
        assert await acquire_lease(session_factory, "renewal_reminders", "worker-b", clock, 60)

    async def test_expired_lease_is_taken_over(self, session_factory, clock):
        assert await acquire_lease(session_factory, "expiration", "worker-a", clock, 60)
        clock.advance(seconds=61)
        assert await acquire_lease(session_factory, "expiration", "worker-b", clock, 60)

        async with session_factory() as db:
            lock = (await db.execute(select(SweepLock))).scalar_one()
        assert lock.holder == "worker-b"

    async def test_unreachable_store(self, unreachable_session_factory, clock):
        with pytest.raises(DependencyUnavailableError) as exc_info:
            await acquire_lease(unreachable_session_factory, "expiration", "worker-a", clock, 60)
        assert exc_info.value.kind is ErrorKind.TRANSIENT
        assert exc_info.value.status_code == 503

    async def test_release_only_removes_own_lease(self, session_factory, clock):
        await acquire_lease(session_factory, "expiration", "worker-a", clock, 60)
        await release_lease(session_factory, "expiration", "worker-b")
        assert not await acquire_lease(session_factory, "expiration", "worker-c", clock, 60)

        await release_lease(session_factory, "expiration", "worker-a")
        assert await acquire_lease(session_factory, "expiration", "worker-c", clock, 60)


class TestSweepLockContext:
    async def test_released_after_block(self, session_factory, clock):
        async with sweep_lock(session_factory, "expiration", clock, 60) as holder:
            assert holder
        async with sweep_lock(session_factory, "expiration", clock, 60):
            pass

    async def test_nested_run_raises(self, session_factory, clock):
        async with sweep_lock(session_factory, "expiration", clock, 60):
            with pytest.raises(SweepInProgressError):
                async with sweep_lock(session_factory, "expiration", clock, 60):
                    pass

    async def test_released_when_block_raises(self, session_factory, clock):
        with pytest.raises(RuntimeError):
            async with sweep_lock(session_factory, "expiration", clock, 60):
                raise RuntimeError("boom")
        assert await acquire_lease(session_factory, "expiration", "next", clock, 60)

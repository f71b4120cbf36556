"""Integration tests for the distribution lease and scheduler status."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from conftest import NOW
from nftstake.staking.errors import DistributionInProgressError
from nftstake.staking.scheduler import LEASE_NAME, LeaseLock

pytestmark = pytest.mark.asyncio


class TestLeaseLock:
    async def test_second_holder_is_refused(self, session_factory):
        lock = LeaseLock(session_factory, LEASE_NAME, ttl_seconds=600)

        assert await lock.acquire("host-a", now=NOW)
        assert not await lock.acquire("host-b", now=NOW + timedelta(seconds=30))

        current = await lock.current(now=NOW + timedelta(seconds=30))
        assert current.holder == "host-a"

    async def test_release_frees_the_lease(self, session_factory):
        lock = LeaseLock(session_factory, LEASE_NAME, ttl_seconds=600)
        await lock.acquire("host-a", now=NOW)

        await lock.release("host-a")

        assert await lock.current(now=NOW) is None
        assert await lock.acquire("host-b", now=NOW)

    async def test_release_by_non_holder_is_ignored(self, session_factory):
        lock = LeaseLock(session_factory, LEASE_NAME, ttl_seconds=600)
        await lock.acquire("host-a", now=NOW)

        await lock.release("host-b")

        assert (await lock.current(now=NOW)).holder == "host-a"

    async def test_expired_lease_is_taken_over(self, session_factory):
        lock = LeaseLock(session_factory, LEASE_NAME, ttl_seconds=600)
        await lock.acquire("crashed-host", now=NOW)
        later = NOW + timedelta(seconds=601)

        assert await lock.current(now=later) is None
        assert await lock.acquire("host-b", now=later)
        assert (await lock.current(now=later)).holder == "host-b"


class TestSchedulerExclusion:
    async def test_refuses_while_another_instance_holds_lease(self, session_factory, scheduler, make_contract, make_position):
        contract = await make_contract()
        await make_position(contract)
        await LeaseLock(session_factory, LEASE_NAME, ttl_seconds=600).acquire("other-instance")

        with pytest.raises(DistributionInProgressError):
            await scheduler.run_monthly(now=NOW)
        with pytest.raises(DistributionInProgressError):
            await scheduler.run_daily_sweep(now=NOW)

    async def test_refuses_overlapping_run_in_process(self, scheduler, make_contract, make_position, ticket_issuer):
        contract = await make_contract()
        await make_position(contract)
        minting = asyncio.Event()
        release = asyncio.Event()

        async def _slow_mint(user_id: int, count: int) -> list[str]:
            minting.set()
            await release.wait()
            return [f"t-{i}" for i in range(count)]

        ticket_issuer.mint_free_entries.side_effect = _slow_mint

        running = asyncio.create_task(scheduler.run_monthly(now=NOW))
        await asyncio.wait_for(minting.wait(), timeout=2)
        assert scheduler.is_running

        with pytest.raises(DistributionInProgressError):
            await scheduler.run_manual(now=NOW)

        release.set()
        summary = await running
        assert summary.tickets_distributed == 12
        assert not scheduler.is_running

    async def test_lease_released_after_run(self, session_factory, scheduler, make_contract, make_position):
        contract = await make_contract()
        await make_position(contract)

        await scheduler.run_monthly(now=NOW)

        assert await scheduler.lease.current() is None

    async def test_lease_released_when_run_raises(self, session_factory, scheduler, monkeypatch):
        async def _boom(*args, **kwargs):
            raise RuntimeError("database gone")

        monkeypatch.setattr(scheduler.engine, "run_batch", _boom)

        with pytest.raises(RuntimeError):
            await scheduler.run_monthly(now=NOW)

        assert await scheduler.lease.current() is None
        assert not scheduler.is_running


class TestSchedulerStatus:
    async def test_empty_status(self, scheduler):
        state = await scheduler.status(now=NOW)

        assert state.last_run is None
        assert state.total_distributed == 0
        assert state.total_errors == 0
        assert state.is_running is False
        assert state.next_run == datetime(2026, 4, 1, 2, 0, tzinfo=timezone.utc)

    async def test_status_after_runs(self, scheduler, distribution_engine, make_contract, make_position, ticket_issuer):
        contract = await make_contract()
        await make_position(contract)
        claimable = await make_position(contract, user_id=8, staked_at=NOW - timedelta(days=70))
        await make_position(contract, user_id=9)
        ticket_issuer.failing_users.add(9)

        await scheduler.run_manual([claimable.id], now=NOW - timedelta(days=1))
        await scheduler.run_monthly(now=NOW)
        await distribution_engine.claim_rewards(8, claimable.id, now=NOW + timedelta(days=40))

        state = await scheduler.status(now=NOW)

        # claim runs are not scheduler runs
        assert state.last_run["trigger"] == "monthly"
        assert state.last_run["status"] == "completed"
        assert state.total_distributed == 24 + 12
        assert state.total_errors == 1
        assert state.to_dict()["is_running"] is False

    async def test_status_reports_foreign_lease(self, session_factory, scheduler):
        await LeaseLock(session_factory, LEASE_NAME, ttl_seconds=600).acquire("other-instance")

        state = await scheduler.status()

        assert state.is_running is True

"""Distribution scheduler: monthly run, daily reconciliation sweep, manual trigger.

All three triggers share one lease row in ``distribution_leases`` and an
in-process guard, so at most one distribution batch runs at a time across
every API and worker instance.
"""

from __future__ import annotations

import os
import socket
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nftstake.config import Settings
from nftstake.db.models import DistributionLease, DistributionRun
from nftstake.staking.engine import BatchSummary, RewardDistributionEngine
from nftstake.staking.errors import DistributionInProgressError
from nftstake.staking.periods import next_monthly_anchor, utcnow

logger = structlog.get_logger()

LEASE_NAME = "reward-distribution"


@dataclass(frozen=True)
class SchedulerState:
    """Snapshot of the scheduler, rebuilt from the database on every read."""

    last_run: dict[str, Any] | None
    next_run: datetime
    total_distributed: int
    total_errors: int
    is_running: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_run": self.last_run,
            "next_run": self.next_run,
            "total_distributed": self.total_distributed,
            "total_errors": self.total_errors,
            "is_running": self.is_running,
        }


class LeaseLock:
    """Row-based lease with expiry. An expired lease can be taken over."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], name: str, ttl_seconds: int) -> None:
        self.session_factory = session_factory
        self.name = name
        self.ttl = timedelta(seconds=ttl_seconds)

    async def acquire(self, holder: str, now: datetime | None = None) -> bool:
        now = now or utcnow()
        async with self.session_factory() as db:
            db.add(DistributionLease(name=self.name, holder=holder, acquired_at=now, expires_at=now + self.ttl))
            try:
                await db.commit()
                return True
            except IntegrityError:
                await db.rollback()

            result = await db.execute(
                update(DistributionLease)
                .where(DistributionLease.name == self.name, DistributionLease.expires_at <= now)
                .values(holder=holder, acquired_at=now, expires_at=now + self.ttl)
            )
            await db.commit()
            return result.rowcount == 1

    async def release(self, holder: str) -> None:
        async with self.session_factory() as db:
            await db.execute(
                delete(DistributionLease).where(
                    DistributionLease.name == self.name,
                    DistributionLease.holder == holder,
                )
            )
            await db.commit()

    async def current(self, now: datetime | None = None) -> DistributionLease | None:
        """The unexpired lease, if any instance holds one."""
        now = now or utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                select(DistributionLease).where(
                    DistributionLease.name == self.name,
                    DistributionLease.expires_at > now,
                )
            )
            return result.scalar_one_or_none()


class DistributionScheduler:
    def __init__(
        self,
        engine: RewardDistributionEngine,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        lease_ttl_seconds: int = 3600,
        monthly_run_day: int = 1,
        monthly_run_hour: int = 2,
    ) -> None:
        self.engine = engine
        self.session_factory = session_factory
        self.lease = LeaseLock(session_factory, LEASE_NAME, lease_ttl_seconds)
        self.monthly_run_day = monthly_run_day
        self.monthly_run_hour = monthly_run_hour
        self.holder = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self._running: str | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        engine: RewardDistributionEngine,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> DistributionScheduler:
        return cls(
            engine,
            session_factory,
            lease_ttl_seconds=settings.distribution_lease_ttl_seconds,
            monthly_run_day=settings.monthly_run_day,
            monthly_run_hour=settings.monthly_run_hour,
        )

    @property
    def is_running(self) -> bool:
        return self._running is not None

    @asynccontextmanager
    async def _exclusive(self, trigger: str) -> AsyncIterator[None]:
        if self._running is not None:
            raise DistributionInProgressError(f"Distribution already running ({self._running})")
        self._running = trigger
        try:
            if not await self.lease.acquire(self.holder):
                logger.info("distribution_lease_busy", trigger=trigger, holder=self.holder)
                raise DistributionInProgressError("Distribution lease is held by another instance")
            try:
                yield
            finally:
                await self.lease.release(self.holder)
        finally:
            self._running = None

    async def run_monthly(self, now: datetime | None = None) -> BatchSummary:
        """Full monthly run over every eligible position."""
        async with self._exclusive("monthly"):
            return await self.engine.run_batch(now=now)

    async def run_daily_sweep(self, now: datetime | None = None) -> BatchSummary:
        """Reconciliation: one catch-up record per position with a multi-month backlog."""
        async with self._exclusive("reconciliation"):
            return await self.engine.run_reconciliation(now=now)

    async def run_manual(self, position_ids: list[int] | None = None, now: datetime | None = None) -> BatchSummary:
        """Admin trigger: the given positions, or a full monthly run when none are given."""
        async with self._exclusive("manual"):
            return await self.engine.run_batch(position_ids, source="manual", now=now)

    async def status(self, now: datetime | None = None) -> SchedulerState:
        now = now or utcnow()
        async with self.session_factory() as db:
            last = (
                await db.execute(
                    select(DistributionRun)
                    .where(DistributionRun.trigger != "claim")
                    .order_by(DistributionRun.started_at.desc(), DistributionRun.id.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()
            totals = (
                await db.execute(
                    select(
                        func.coalesce(func.sum(DistributionRun.tickets_distributed), 0),
                        func.coalesce(func.sum(DistributionRun.failed), 0),
                    ).where(DistributionRun.trigger != "claim")
                )
            ).one()

        lease = await self.lease.current(now)
        return SchedulerState(
            last_run=_run_to_dict(last) if last is not None else None,
            next_run=next_monthly_anchor(now, self.monthly_run_day, self.monthly_run_hour),
            total_distributed=int(totals[0]),
            total_errors=int(totals[1]),
            is_running=self.is_running or lease is not None,
        )


def _run_to_dict(run: DistributionRun) -> dict[str, Any]:
    return {
        "id": run.id,
        "trigger": run.trigger,
        "status": run.status,
        "started_at": run.started_at,
        "finished_at": run.finished_at,
        "total_processed": run.total_processed,
        "successful": run.successful,
        "failed": run.failed,
        "tickets_distributed": run.tickets_distributed,
        "execution_time_ms": run.execution_time_ms,
    }

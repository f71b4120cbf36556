"""Reward distribution engine.

Decides which positions owe rewards, mints the tickets, and commits the
ledger row, the position update and the contract counter in one
transaction. The position update is a compare-and-set on
``last_reward_distribution``: whichever run commits first wins and any
overlapping run rolls back with ``PositionAlreadyDistributedError``.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nftstake.config import Settings
from nftstake.db.models import DistributionRun, StakingContract, StakingPosition
from nftstake.staking.collaborators import RewardNotice, RewardNotifier, TicketIssuer
from nftstake.staking.errors import (
    ContractNotFoundError,
    NotificationTimeoutError,
    PositionAlreadyDistributedError,
    PositionNotEligibleError,
    PositionNotFoundError,
    PositionNotVerifiedError,
    StakingError,
    TicketIssuanceError,
)
from nftstake.staking.ledger import STATUS_FAILED, build_record
from nftstake.staking.periods import utcnow
from nftstake.staking.positions import (
    STATUS_ACTIVE,
    backlog_positions_query,
    eligible_positions_query,
    get_user_positions,
    is_eligible_for_rewards,
    next_reward_date,
    pending_reward_months,
    reward_distribution_changes,
)
from nftstake.staking.registry import ensure_distributable, get_reward_structure

logger = structlog.get_logger()

# Batch modes. "monthly" is the full scheduled run, "reconciliation" the daily sweep.
MODE_MONTHLY = "monthly"
MODE_RECONCILIATION = "reconciliation"
MODE_MANUAL = "manual"
MODE_CLAIM = "claim"


@dataclass
class PositionResult:
    position_id: int
    success: bool
    tickets: int = 0
    months: int = 0
    bonus_multiplier: float = 1.0
    distribution_type: str | None = None
    skipped: bool = False
    message: str | None = None
    error_code: str | None = None
    exception: Exception | None = field(default=None, repr=False, compare=False)

    @property
    def effective_value(self) -> float:
        return self.tickets * self.bonus_multiplier

    def to_dict(self) -> dict[str, Any]:
        return {
            "position_id": self.position_id,
            "success": self.success,
            "tickets": self.tickets,
            "months": self.months,
            "bonus_multiplier": self.bonus_multiplier,
            "effective_value": self.effective_value,
            "distribution_type": self.distribution_type,
            "skipped": self.skipped,
            "message": self.message,
            "error_code": self.error_code,
        }


@dataclass
class BatchSummary:
    total_processed: int = 0
    successful: int = 0
    failed: int = 0
    tickets_distributed: int = 0
    results: list[PositionResult] = field(default_factory=list)
    execution_time_ms: int = 0
    run_id: int | None = None

    def add(self, result: PositionResult) -> None:
        self.results.append(result)
        self.total_processed += 1
        if result.success:
            self.successful += 1
            self.tickets_distributed += result.tickets
        else:
            self.failed += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "total_processed": self.total_processed,
            "successful": self.successful,
            "failed": self.failed,
            "tickets_distributed": self.tickets_distributed,
            "execution_time_ms": self.execution_time_ms,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass(frozen=True)
class _Plan:
    """What one position is owed, captured before any external call."""

    position: StakingPosition
    contract: StakingContract
    months: int
    tickets_per_month: int
    bonus_multiplier: float
    distribution_type: str
    expected_last: datetime | None

    @property
    def tickets(self) -> int:
        return self.months * self.tickets_per_month


class RewardDistributionEngine:
    """Distributes staking rewards over a set of positions.

    Each position runs in its own session under a semaphore; a failure in
    one never affects the others.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ticket_issuer: TicketIssuer,
        notifier: RewardNotifier,
        *,
        concurrency: int = 8,
        mint_timeout: float = 10.0,
        notification_timeout: float = 5.0,
        isolation_level: str | None = "SERIALIZABLE",
        require_verified: bool = False,
    ) -> None:
        self.session_factory = session_factory
        self.ticket_issuer = ticket_issuer
        self.notifier = notifier
        self.concurrency = max(1, concurrency)
        self.mint_timeout = mint_timeout
        self.notification_timeout = notification_timeout
        self.isolation_level = isolation_level
        self.require_verified = require_verified
        self._notifications: set[asyncio.Task[None]] = set()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        ticket_issuer: TicketIssuer,
        notifier: RewardNotifier,
    ) -> RewardDistributionEngine:
        return cls(
            session_factory,
            ticket_issuer,
            notifier,
            concurrency=settings.distribution_concurrency,
            mint_timeout=settings.collaborator_timeout_seconds,
            notification_timeout=settings.notification_timeout_seconds,
            isolation_level=settings.commit_isolation_level or None,
            require_verified=settings.require_verified_positions,
        )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def run_batch(
        self,
        position_ids: list[int] | None = None,
        *,
        source: str = "scheduler",
        now: datetime | None = None,
    ) -> BatchSummary:
        """Distribute to the given positions (manual) or to every eligible one (monthly)."""
        if position_ids is not None:
            return await self._run(MODE_MANUAL, position_ids, source=source, now=now)
        return await self._run(MODE_MONTHLY, None, source=source, now=now)

    async def run_reconciliation(self, *, now: datetime | None = None) -> BatchSummary:
        """Catch up positions that missed one or more monthly runs, one record each."""
        return await self._run(MODE_RECONCILIATION, None, source="scheduler", now=now)

    async def claim_rewards(
        self,
        user_id: int,
        position_id: int,
        *,
        now: datetime | None = None,
    ) -> PositionResult:
        """Pay the pending backlog of one position to its owner.

        Raises the position's StakingError when the claim fails.
        """
        async with self.session_factory() as db:
            position = await db.get(StakingPosition, position_id)
            if position is None or position.user_id != user_id:
                raise PositionNotFoundError(position_id)

        summary = await self._run(MODE_CLAIM, [position_id], source="api", now=now)
        result = summary.results[0]
        if not result.success:
            if result.exception is not None:
                raise result.exception
            raise PositionNotEligibleError(result.message or "Claim failed")
        if result.skipped:
            raise PositionNotEligibleError(f"Position {position_id} has no pending rewards")
        return result

    async def calculate_user_pending_rewards(
        self,
        user_id: int,
        *,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Pending tickets and next reward date for each active position of a user."""
        now = now or utcnow()
        async with self.session_factory() as db:
            positions = await get_user_positions(db, user_id, status=STATUS_ACTIVE)
            contracts: dict[int, StakingContract | None] = {}
            entries = []
            total_pending = 0
            for position in positions:
                if position.contract_id not in contracts:
                    contracts[position.contract_id] = await db.get(StakingContract, position.contract_id)
                contract = contracts[position.contract_id]
                if contract is None or not is_eligible_for_rewards(position, now):
                    continue
                tier = get_reward_structure(contract, position.staking_duration)
                months = pending_reward_months(position, now)
                pending = months * tier.tickets_per_month
                total_pending += pending
                entries.append({
                    "position_id": position.id,
                    "contract_name": contract.contract_name,
                    "nft_id": position.nft_id,
                    "staking_duration": position.staking_duration,
                    "pending_months": months,
                    "pending_tickets": pending,
                    "bonus_multiplier": tier.bonus_multiplier,
                    "next_reward_date": next_reward_date(position, now),
                })

        return {
            "user_id": user_id,
            "total_pending_tickets": total_pending,
            "positions": entries,
        }

    async def drain_notifications(self) -> None:
        """Wait for in-flight notifications, bounded by the notification timeout."""
        if not self._notifications:
            return
        pending = list(self._notifications)
        done, not_done = await asyncio.wait(pending, timeout=self.notification_timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            logger.warning("reward_notifications_abandoned", count=len(not_done))

    # ------------------------------------------------------------------
    # Batch driver
    # ------------------------------------------------------------------

    async def _run(
        self,
        mode: str,
        position_ids: list[int] | None,
        *,
        source: str,
        now: datetime | None,
    ) -> BatchSummary:
        now = now or utcnow()
        started = time.monotonic()
        run_id = await self._start_run(mode, now)
        log = logger.bind(run_id=run_id, mode=mode)
        log.info("reward_batch_started", requested=len(position_ids) if position_ids is not None else None)

        summary = BatchSummary(run_id=run_id)
        try:
            if position_ids is None:
                position_ids = await self._select_positions(mode, now)

            semaphore = asyncio.Semaphore(self.concurrency)

            async def _guarded(position_id: int) -> PositionResult:
                async with semaphore:
                    return await self._process_position(position_id, mode, source, now)

            results = await asyncio.gather(*(_guarded(pid) for pid in position_ids))
            for result in results:
                summary.add(result)
        except Exception as exc:
            summary.execution_time_ms = int((time.monotonic() - started) * 1000)
            await self._finish_run(run_id, summary, status="failed", error=str(exc))
            log.error("reward_batch_failed", error=str(exc), exc_info=exc)
            raise

        await self.drain_notifications()
        summary.execution_time_ms = int((time.monotonic() - started) * 1000)
        await self._finish_run(run_id, summary, status="completed")
        log.info(
            "reward_batch_completed",
            total_processed=summary.total_processed,
            successful=summary.successful,
            failed=summary.failed,
            tickets_distributed=summary.tickets_distributed,
            execution_time_ms=summary.execution_time_ms,
        )
        return summary

    async def _select_positions(self, mode: str, now: datetime) -> list[int]:
        query = backlog_positions_query(now) if mode == MODE_RECONCILIATION else eligible_positions_query(now)
        async with self.session_factory() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def _start_run(self, trigger: str, now: datetime) -> int:
        async with self.session_factory() as db:
            run = DistributionRun(trigger=trigger, status="running", started_at=now)
            db.add(run)
            await db.commit()
            return run.id

    async def _finish_run(
        self,
        run_id: int,
        summary: BatchSummary,
        *,
        status: str,
        error: str | None = None,
    ) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(DistributionRun)
                .where(DistributionRun.id == run_id)
                .values(
                    status=status,
                    finished_at=utcnow(),
                    total_processed=summary.total_processed,
                    successful=summary.successful,
                    failed=summary.failed,
                    tickets_distributed=summary.tickets_distributed,
                    execution_time_ms=summary.execution_time_ms,
                    error=error,
                )
            )
            await db.commit()

    # ------------------------------------------------------------------
    # Per-position unit of work
    # ------------------------------------------------------------------

    async def _process_position(self, position_id: int, mode: str, source: str, now: datetime) -> PositionResult:
        log = logger.bind(position_id=position_id, mode=mode)
        plan: _Plan | None = None
        try:
            plan = await self._plan(position_id, mode, now)
            if plan.tickets_per_month == 0:
                return PositionResult(
                    position_id=position_id,
                    success=True,
                    bonus_multiplier=plan.bonus_multiplier,
                    skipped=True,
                    message="No tickets to distribute",
                )
            if plan.months == 0:
                return PositionResult(
                    position_id=position_id,
                    success=True,
                    bonus_multiplier=plan.bonus_multiplier,
                    skipped=True,
                    message="No whole month pending",
                )

            ticket_ids = await self._mint(plan.position.user_id, plan.tickets)
            await self._commit(plan, ticket_ids, source, now)
        except StakingError as exc:
            log.warning("position_reward_failed", error_code=exc.code, error=str(exc))
            await self._record_failure(plan, exc, source, now)
            return PositionResult(
                position_id=position_id,
                success=False,
                message=str(exc),
                error_code=exc.code,
                exception=exc,
            )
        except Exception as exc:
            log.error("position_reward_error", error=str(exc), exc_info=exc)
            await self._record_failure(plan, exc, source, now)
            return PositionResult(
                position_id=position_id,
                success=False,
                message=str(exc),
                error_code="internal_error",
                exception=exc,
            )

        log.info(
            "position_reward_distributed",
            tickets=plan.tickets,
            months=plan.months,
            distribution_type=plan.distribution_type,
        )
        self._schedule_notification(plan, now)
        return PositionResult(
            position_id=position_id,
            success=True,
            tickets=plan.tickets,
            months=plan.months,
            bonus_multiplier=plan.bonus_multiplier,
            distribution_type=plan.distribution_type,
        )

    async def _plan(self, position_id: int, mode: str, now: datetime) -> _Plan:
        async with self.session_factory() as db:
            position = await db.get(StakingPosition, position_id)
            if position is None:
                raise PositionNotFoundError(position_id)
            contract = await db.get(StakingContract, position.contract_id)
            if contract is None:
                raise ContractNotFoundError(position.contract_id)

        ensure_distributable(contract)
        tier = get_reward_structure(contract, position.staking_duration)
        if not is_eligible_for_rewards(position, now):
            raise PositionNotEligibleError(f"Position {position_id} is not earning rewards")
        if self.require_verified and not position.onchain_verified:
            raise PositionNotVerifiedError(f"Position {position_id} has not been verified on-chain")

        months, distribution_type = self._months_owed(position, mode, now)
        return _Plan(
            position=position,
            contract=contract,
            months=months,
            tickets_per_month=tier.tickets_per_month,
            bonus_multiplier=tier.bonus_multiplier,
            distribution_type=distribution_type,
            expected_last=position.last_reward_distribution,
        )

    @staticmethod
    def _months_owed(position: StakingPosition, mode: str, now: datetime) -> tuple[int, str]:
        pending = pending_reward_months(position, now)
        if mode == MODE_MONTHLY:
            # A backlog found by the monthly run is paid in full as a catch-up.
            if pending >= 2:
                return pending, "missed"
            return min(pending, 1), "monthly"
        if mode == MODE_RECONCILIATION:
            return (pending, "missed") if pending >= 2 else (0, "missed")
        if mode == MODE_MANUAL:
            return max(pending, 1), "manual"
        if pending == 0:
            raise PositionNotEligibleError(f"Position {position.id} has no pending rewards")
        return pending, "claim"

    async def _mint(self, user_id: int, count: int) -> list[str]:
        try:
            return await asyncio.wait_for(
                self.ticket_issuer.mint_free_entries(user_id, count),
                timeout=self.mint_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise TicketIssuanceError(f"Ticket issuance timed out after {self.mint_timeout}s") from exc
        except StakingError:
            raise
        except Exception as exc:
            raise TicketIssuanceError(f"Ticket issuance failed: {exc}") from exc

    async def _begin(self, db: AsyncSession) -> None:
        if self.isolation_level and db.bind is not None and db.bind.dialect.name == "postgresql":
            await db.connection(execution_options={"isolation_level": self.isolation_level})

    async def _commit(self, plan: _Plan, ticket_ids: list[str], source: str, now: datetime) -> None:
        """Ledger append, position compare-and-set and contract increment, all or nothing."""
        position = plan.position
        tickets = plan.tickets
        changes = reward_distribution_changes(position, tickets, plan.bonus_multiplier, now, plan.distribution_type)
        # Increment in SQL so a concurrent summary rebuild's total is not overwritten.
        changes["total_rewards_earned"] = StakingPosition.total_rewards_earned + tickets
        last_matches = (
            StakingPosition.last_reward_distribution.is_(None)
            if plan.expected_last is None
            else StakingPosition.last_reward_distribution == plan.expected_last
        )

        async with self.session_factory() as db:
            await self._begin(db)
            try:
                result = await db.execute(
                    update(StakingPosition)
                    .where(
                        StakingPosition.id == position.id,
                        StakingPosition.status == STATUS_ACTIVE,
                        last_matches,
                    )
                    .values(**changes)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise PositionAlreadyDistributedError(
                        f"Position {position.id} was distributed by another run"
                    )
                db.add(
                    build_record(
                        position,
                        plan.contract,
                        tickets=tickets,
                        multiplier=plan.bonus_multiplier,
                        months=plan.months,
                        distribution_type=plan.distribution_type,
                        source=source,
                        now=now,
                        ticket_ids=ticket_ids,
                    )
                )
                await db.execute(
                    update(StakingContract)
                    .where(StakingContract.id == plan.contract.id)
                    .values(total_rewards_distributed=StakingContract.total_rewards_distributed + tickets)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
            except Exception:
                await db.rollback()
                logger.warning("reward_commit_rolled_back", position_id=position.id, minted=len(ticket_ids))
                raise

    async def _record_failure(
        self,
        plan: _Plan | None,
        exc: Exception,
        source: str,
        now: datetime,
    ) -> None:
        """Append a zero-ticket ``failed`` row when delivery of an owed reward failed."""
        if plan is None or plan.months == 0 or isinstance(exc, PositionAlreadyDistributedError):
            return
        try:
            async with self.session_factory() as db:
                db.add(
                    build_record(
                        plan.position,
                        plan.contract,
                        tickets=0,
                        multiplier=plan.bonus_multiplier,
                        months=plan.months,
                        distribution_type=plan.distribution_type,
                        source=source,
                        now=now,
                        status=STATUS_FAILED,
                        failure_reason=str(exc)[:1000],
                    )
                )
                await db.commit()
        except Exception:
            logger.exception("failed_reward_record_not_written", position_id=plan.position.id)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _schedule_notification(self, plan: _Plan, now: datetime) -> None:
        notice = RewardNotice(
            position_id=plan.position.id,
            contract_name=plan.contract.contract_name,
            nft_id=plan.position.nft_id,
            open_entry_tickets=plan.tickets,
            bonus_multiplier=plan.bonus_multiplier,
            effective_value=plan.tickets * plan.bonus_multiplier,
            distribution_type=plan.distribution_type,
            distributed_at=now.isoformat(),
        )
        task = asyncio.create_task(self._notify(plan.position.user_id, notice))
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)

    async def _notify(self, user_id: int, notice: RewardNotice) -> None:
        try:
            try:
                await asyncio.wait_for(
                    self.notifier.send_reward_notification(user_id, notice),
                    timeout=self.notification_timeout,
                )
            except asyncio.TimeoutError as exc:
                raise NotificationTimeoutError(
                    f"Reward notification for position {notice.position_id} timed out"
                ) from exc
        except NotificationTimeoutError as exc:
            logger.warning("reward_notification_timeout", user_id=user_id, error=str(exc))
        except Exception:
            logger.warning("reward_notification_failed", user_id=user_id, exc_info=True)


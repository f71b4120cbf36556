"""Reward history ledger: append helpers and read-side aggregates.

Every read here goes to ``staking_reward_history``. The ``reward_summary``
embedded on positions is a cache that ``rebuild_reward_summary`` can
regenerate at any time.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from nftstake.db.models import StakingContract, StakingPosition, StakingRewardHistory
from nftstake.staking.errors import DistributionInProgressError
from nftstake.staking.periods import period_of, utcnow
from nftstake.staking.positions import get_position, summary_entry

logger = structlog.get_logger()

STATUS_DISTRIBUTED = "distributed"
STATUS_FAILED = "failed"

DISTRIBUTION_TYPES = ("monthly", "missed", "manual", "claim")

REBUILD_ATTEMPTS = 3


def build_record(
    position: StakingPosition,
    contract: StakingContract,
    *,
    tickets: int,
    multiplier: float,
    months: int,
    distribution_type: str,
    source: str,
    now: datetime,
    ticket_ids: list[str] | None = None,
    status: str = STATUS_DISTRIBUTED,
    failure_reason: str | None = None,
) -> StakingRewardHistory:
    """Ledger row with the position and contract context frozen at ``now``."""
    year, month = period_of(now)
    return StakingRewardHistory(
        user_id=position.user_id,
        position_id=position.id,
        contract_id=contract.id,
        distribution_date=now,
        distribution_month=month,
        distribution_year=year,
        open_entry_tickets=tickets,
        bonus_multiplier=multiplier,
        effective_value=tickets * multiplier,
        months_covered=months,
        distribution_type=distribution_type,
        distribution_source=source,
        status=status,
        failure_reason=failure_reason,
        ticket_ids=list(ticket_ids or []),
        blockchain=position.blockchain,
        nft_contract_address=position.nft_contract_address,
        nft_token_id=position.nft_token_id,
        contract_name=contract.contract_name,
        staking_duration=position.staking_duration,
        staking_start_date=position.staked_at,
        staking_end_date=position.unstake_at,
        created_at=now,
    )


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------


async def get_user_total_rewards(
    db: AsyncSession,
    user_id: int,
    days: int | None = None,
) -> dict[str, Any]:
    """Lifetime (or last ``days``) totals for one user."""
    query = select(
        func.coalesce(func.sum(StakingRewardHistory.open_entry_tickets), 0),
        func.coalesce(func.sum(StakingRewardHistory.effective_value), 0.0),
        func.count(StakingRewardHistory.id),
        func.avg(StakingRewardHistory.bonus_multiplier),
    ).where(
        StakingRewardHistory.user_id == user_id,
        StakingRewardHistory.status == STATUS_DISTRIBUTED,
    )
    if days is not None:
        query = query.where(StakingRewardHistory.distribution_date >= utcnow() - timedelta(days=days))

    row = (await db.execute(query)).one()
    return {
        "user_id": user_id,
        "total_tickets": int(row[0]),
        "total_effective_value": float(row[1]),
        "total_distributions": int(row[2]),
        "average_multiplier": round(float(row[3]), 4) if row[3] is not None else 0.0,
    }


async def get_contract_metrics(
    db: AsyncSession,
    contract_id: int,
    days: int | None = None,
) -> list[dict[str, Any]]:
    """Per-month totals for one contract, newest month first."""
    query = (
        select(
            StakingRewardHistory.distribution_year,
            StakingRewardHistory.distribution_month,
            func.sum(StakingRewardHistory.open_entry_tickets),
            func.sum(StakingRewardHistory.effective_value),
            func.count(func.distinct(StakingRewardHistory.user_id)),
            func.count(StakingRewardHistory.id),
        )
        .where(
            StakingRewardHistory.contract_id == contract_id,
            StakingRewardHistory.status == STATUS_DISTRIBUTED,
        )
        .group_by(StakingRewardHistory.distribution_year, StakingRewardHistory.distribution_month)
        .order_by(
            StakingRewardHistory.distribution_year.desc(),
            StakingRewardHistory.distribution_month.desc(),
        )
    )
    if days is not None:
        query = query.where(StakingRewardHistory.distribution_date >= utcnow() - timedelta(days=days))

    result = await db.execute(query)
    return [
        {
            "year": year,
            "month": month,
            "total_tickets": int(tickets or 0),
            "total_effective_value": float(effective or 0.0),
            "unique_users": int(users),
            "total_distributions": int(count),
        }
        for year, month, tickets, effective, users, count in result.all()
    ]


async def get_monthly_distribution_summary(
    db: AsyncSession,
    year: int,
    month: int,
) -> list[dict[str, Any]]:
    """Totals for one calendar month, grouped by contract and duration tier."""
    result = await db.execute(
        select(
            StakingContract.id,
            StakingContract.contract_name,
            StakingContract.contract_address,
            StakingContract.blockchain,
            StakingRewardHistory.staking_duration,
            func.sum(StakingRewardHistory.open_entry_tickets),
            func.sum(StakingRewardHistory.effective_value),
            func.count(StakingRewardHistory.id),
            func.count(func.distinct(StakingRewardHistory.user_id)),
        )
        .join(StakingContract, StakingContract.id == StakingRewardHistory.contract_id)
        .where(
            StakingRewardHistory.distribution_year == year,
            StakingRewardHistory.distribution_month == month,
            StakingRewardHistory.status == STATUS_DISTRIBUTED,
        )
        .group_by(
            StakingContract.id,
            StakingContract.contract_name,
            StakingContract.contract_address,
            StakingContract.blockchain,
            StakingRewardHistory.staking_duration,
        )
        .order_by(StakingContract.id, StakingRewardHistory.staking_duration)
    )
    return [
        {
            "contract_id": contract_id,
            "contract_name": name,
            "contract_address": address,
            "blockchain": chain,
            "staking_duration": duration,
            "total_tickets": int(tickets or 0),
            "total_effective_value": float(effective or 0.0),
            "position_count": int(count),
            "unique_users": int(users),
        }
        for contract_id, name, address, chain, duration, tickets, effective, count, users in result.all()
    ]


async def get_user_reward_history(
    db: AsyncSession,
    user_id: int,
    page: int = 1,
    per_page: int = 20,
) -> tuple[list[StakingRewardHistory], int]:
    """Paginated ledger rows for a user, newest first. Returns (rows, total)."""
    total = (
        await db.execute(
            select(func.count(StakingRewardHistory.id)).where(StakingRewardHistory.user_id == user_id)
        )
    ).scalar_one()
    result = await db.execute(
        select(StakingRewardHistory)
        .where(StakingRewardHistory.user_id == user_id)
        .order_by(StakingRewardHistory.distribution_date.desc(), StakingRewardHistory.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    )
    return list(result.scalars().all()), int(total)


async def get_position_ledger_total(db: AsyncSession, position_id: int) -> int:
    """Sum of tickets over every ledger row of the position (failed rows carry 0)."""
    result = await db.execute(
        select(func.coalesce(func.sum(StakingRewardHistory.open_entry_tickets), 0)).where(
            StakingRewardHistory.position_id == position_id
        )
    )
    return int(result.scalar_one())


async def get_position_ledger_entries(db: AsyncSession, position_id: int) -> list[StakingRewardHistory]:
    result = await db.execute(
        select(StakingRewardHistory)
        .where(
            StakingRewardHistory.position_id == position_id,
            StakingRewardHistory.status == STATUS_DISTRIBUTED,
        )
        .order_by(StakingRewardHistory.distribution_date, StakingRewardHistory.id)
    )
    return list(result.scalars().all())


def summary_from_ledger(entries: list[StakingRewardHistory]) -> list[dict[str, Any]]:
    return [
        summary_entry(
            entry.open_entry_tickets,
            entry.bonus_multiplier,
            entry.distribution_date,
            entry.distribution_type,
        )
        for entry in entries
    ]


async def rebuild_reward_summary(db: AsyncSession, position_id: int) -> StakingPosition:
    """Regenerate the position's embedded summary and total from the ledger.

    The write is a compare-and-set on ``last_reward_distribution``: if a
    distribution commits while the ledger is being read, the rebuild reads
    again instead of writing a stale total.

    Raises:
        PositionNotFoundError: unknown position.
        DistributionInProgressError: distributions kept landing on every attempt.
    """
    position = await get_position(db, position_id)
    for _ in range(REBUILD_ATTEMPTS):
        observed = await db.scalar(
            select(StakingPosition.last_reward_distribution).where(StakingPosition.id == position_id)
        )
        entries = await get_position_ledger_entries(db, position_id)
        last_matches = (
            StakingPosition.last_reward_distribution.is_(None)
            if observed is None
            else StakingPosition.last_reward_distribution == observed
        )
        result = await db.execute(
            update(StakingPosition)
            .where(StakingPosition.id == position_id, last_matches)
            .values(
                reward_summary=summary_from_ledger(entries),
                total_rewards_earned=sum(entry.open_entry_tickets for entry in entries),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            await db.commit()
            await db.refresh(position)
            return position
        await db.rollback()
        logger.info("reward_summary_rebuild_retry", position_id=position_id)
    raise DistributionInProgressError(f"Position {position_id} kept changing during the summary rebuild")

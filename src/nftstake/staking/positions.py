"""Position state machine and stake lifecycle.

States are ``active`` and ``unstaked`` (terminal). "Expired" is derived:
an active position past ``unstake_at`` can be unstaked but earns nothing.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import Select, and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from nftstake.db.models import StakingContract, StakingPosition
from nftstake.staking.errors import (
    InvalidAddressError,
    NFTAlreadyStakedError,
    PositionNotFoundError,
    UnstakeNotAllowedError,
    UnsupportedDurationError,
)
from nftstake.staking.periods import add_months, period_of, utcnow, whole_months_between
from nftstake.staking.registry import (
    DURATION_TIERS,
    ensure_distributable,
    get_contract,
    validate_contract_address,
)

logger = structlog.get_logger()

STATUS_ACTIVE = "active"
STATUS_UNSTAKED = "unstaked"

EARLY_UNSTAKE_PENALTY_RATE = 0.10


@dataclass(frozen=True)
class UnstakeProof:
    tx_hash: str | None = None
    block_number: int | None = None


# ---------------------------------------------------------------------------
# Pure state functions
# ---------------------------------------------------------------------------


def is_eligible_for_rewards(position: StakingPosition, now: datetime | None = None) -> bool:
    now = now or utcnow()
    return position.status == STATUS_ACTIVE and now < position.unstake_at


def can_unstake(position: StakingPosition, now: datetime | None = None) -> bool:
    now = now or utcnow()
    return position.status == STATUS_ACTIVE and now >= position.unstake_at


def reward_anchor(position: StakingPosition) -> datetime:
    """Start of the unpaid period: last distribution, or the stake date."""
    return position.last_reward_distribution or position.staked_at


def pending_reward_months(position: StakingPosition, now: datetime | None = None) -> int:
    """Whole calendar months owed since the last distribution (or the stake date)."""
    now = now or utcnow()
    return whole_months_between(reward_anchor(position), now)


def next_reward_date(position: StakingPosition, now: datetime | None = None) -> datetime | None:
    """When the position next accrues a whole month, or None once it stops earning."""
    if not is_eligible_for_rewards(position, now):
        return None
    due = add_months(reward_anchor(position), pending_reward_months(position, now) + 1)
    if due > position.unstake_at:
        return None
    return due


def staking_progress(position: StakingPosition, now: datetime | None = None) -> float:
    """Percent of the staking term elapsed, 0 to 100."""
    now = now or utcnow()
    total = (position.unstake_at - position.staked_at).total_seconds()
    if total <= 0:
        return 100.0
    elapsed = (now - position.staked_at).total_seconds()
    return round(min(100.0, max(0.0, elapsed / total * 100)), 2)


def remaining_days(position: StakingPosition, now: datetime | None = None) -> int:
    now = now or utcnow()
    remaining = position.unstake_at - now
    if remaining <= timedelta(0):
        return 0
    return math.ceil(remaining.total_seconds() / 86400)


def summary_entry(
    tickets: int,
    multiplier: float,
    distributed_at: datetime,
    distribution_type: str,
) -> dict[str, Any]:
    year, month = period_of(distributed_at)
    return {
        "distributed_at": distributed_at.isoformat(),
        "open_entry_tickets": tickets,
        "bonus_multiplier": multiplier,
        "distribution_type": distribution_type,
        "month": month,
        "year": year,
    }


def reward_distribution_changes(
    position: StakingPosition,
    tickets: int,
    multiplier: float,
    now: datetime,
    distribution_type: str = "monthly",
) -> dict[str, Any]:
    """Column values a distribution writes: summary appended, total and timestamp advanced."""
    return {
        "reward_summary": [
            *(position.reward_summary or []),
            summary_entry(tickets, multiplier, now, distribution_type),
        ],
        "total_rewards_earned": (position.total_rewards_earned or 0) + tickets,
        "last_reward_distribution": now,
        "updated_at": now,
    }


def apply_reward_distribution(
    position: StakingPosition,
    tickets: int,
    multiplier: float,
    now: datetime,
    distribution_type: str = "monthly",
) -> None:
    """Record a distribution on the in-memory position.

    The engine persists the same changes with a compare-and-set; call this
    only on a copy that is committed inside that unit.
    """
    for column, value in reward_distribution_changes(position, tickets, multiplier, now, distribution_type).items():
        setattr(position, column, value)


def early_unstake_penalty(position: StakingPosition, now: datetime) -> tuple[int, str | None]:
    """Penalty for leaving before ``unstake_at``: (amount, reason).

    Proportional to the unserved share of the term, at most 10% of lifetime
    earnings, rounded down.
    """
    if now >= position.unstake_at:
        return 0, None
    total_rewards = position.total_rewards_earned or 0
    total_duration = (position.unstake_at - position.staked_at).total_seconds()
    if total_duration <= 0:
        return 0, None
    remaining = (position.unstake_at - now).total_seconds()
    remaining_pct = min(1.0, remaining / total_duration)
    penalty = math.floor(total_rewards * remaining_pct * EARLY_UNSTAKE_PENALTY_RATE)
    cap = math.floor(total_rewards * EARLY_UNSTAKE_PENALTY_RATE)
    penalty = min(penalty, cap)
    reason = f"Early unstaking penalty: {round(remaining_pct * EARLY_UNSTAKE_PENALTY_RATE * 100)}%"
    return penalty, reason


def unstake_changes(
    position: StakingPosition,
    proof: UnstakeProof | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Column values for moving the position to ``unstaked``, penalty included."""
    now = now or utcnow()
    penalty, reason = early_unstake_penalty(position, now)
    changes: dict[str, Any] = {
        "status": STATUS_UNSTAKED,
        "actual_unstaked_at": now,
        "updated_at": now,
    }
    if reason is not None:
        changes.update(penalty_applied=True, penalty_amount=penalty, penalty_reason=reason)
    if proof is not None:
        changes.update(unstaking_tx_hash=proof.tx_hash, unstaking_block_number=proof.block_number)
    return changes


def unstake(position: StakingPosition, proof: UnstakeProof | None = None, now: datetime | None = None) -> None:
    """Move the position to ``unstaked`` and apply the early penalty if due."""
    for column, value in unstake_changes(position, proof, now).items():
        setattr(position, column, value)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def eligible_positions_query(now: datetime) -> Select[tuple[int]]:
    """Ids due for the monthly run: active, unexpired, unpaid for a month."""
    month_ago = add_months(now, -1)
    return (
        select(StakingPosition.id)
        .where(
            StakingPosition.status == STATUS_ACTIVE,
            StakingPosition.unstake_at > now,
            or_(
                StakingPosition.last_reward_distribution.is_(None),
                StakingPosition.last_reward_distribution < month_ago,
            ),
        )
        .order_by(StakingPosition.id)
    )


def backlog_positions_query(now: datetime) -> Select[tuple[int]]:
    """Ids whose last payout (or stake date) is at least two months old."""
    cutoff = add_months(now, -2)
    anchor = func.coalesce(StakingPosition.last_reward_distribution, StakingPosition.staked_at)
    return (
        select(StakingPosition.id)
        .where(
            StakingPosition.status == STATUS_ACTIVE,
            StakingPosition.unstake_at > now,
            anchor <= cutoff,
        )
        .order_by(StakingPosition.id)
    )


async def get_position(db: AsyncSession, position_id: int) -> StakingPosition:
    position = await db.get(StakingPosition, position_id)
    if position is None:
        raise PositionNotFoundError(position_id)
    return position


async def get_user_positions(
    db: AsyncSession,
    user_id: int,
    status: str | None = None,
) -> list[StakingPosition]:
    query = select(StakingPosition).where(StakingPosition.user_id == user_id)
    if status is not None:
        query = query.where(StakingPosition.status == status)
    result = await db.execute(query.order_by(StakingPosition.staked_at.desc()))
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


async def open_position(
    db: AsyncSession,
    *,
    user_id: int,
    contract_id: int,
    wallet_address: str,
    nft_token_id: str,
    staking_duration: int,
    onchain_position_id: str | None = None,
    now: datetime | None = None,
) -> StakingPosition:
    """Stake one NFT on a validated contract.

    One active stake per token is enforced by the partial unique index on
    NFT identity; a concurrent insert that loses surfaces as
    NFTAlreadyStakedError.

    Raises:
        ContractNotFoundError / ContractInactiveError: contract unusable.
        UnsupportedDurationError: duration is not a tier.
        InvalidAddressError: wallet address is malformed for the chain.
        NFTAlreadyStakedError: the token already has an active position.
    """
    now = now or utcnow()
    if staking_duration not in DURATION_TIERS:
        raise UnsupportedDurationError(staking_duration)

    contract = await get_contract(db, contract_id)
    ensure_distributable(contract)
    if not validate_contract_address(wallet_address, contract.blockchain):
        raise InvalidAddressError(wallet_address, contract.blockchain)

    nft_id = f"{contract.blockchain}:{contract.contract_address}:{nft_token_id}"
    existing = await db.execute(
        select(StakingPosition.id).where(
            and_(
                StakingPosition.blockchain == contract.blockchain,
                StakingPosition.nft_contract_address == contract.contract_address,
                StakingPosition.nft_token_id == nft_token_id,
                StakingPosition.status == STATUS_ACTIVE,
            )
        )
    )
    if existing.first() is not None:
        raise NFTAlreadyStakedError(f"NFT {nft_id} is already staked")

    position = StakingPosition(
        user_id=user_id,
        contract_id=contract.id,
        wallet_address=wallet_address.lower(),
        blockchain=contract.blockchain,
        nft_contract_address=contract.contract_address,
        nft_token_id=nft_token_id,
        staking_duration=staking_duration,
        staked_at=now,
        unstake_at=add_months(now, staking_duration),
        status=STATUS_ACTIVE,
        total_rewards_earned=0,
        reward_summary=[],
        onchain_position_id=onchain_position_id,
        created_at=now,
    )
    db.add(position)
    try:
        await db.flush()
        await db.execute(
            update(StakingContract)
            .where(StakingContract.id == contract.id)
            .values(total_staked=StakingContract.total_staked + 1, updated_at=now)
        )
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        logger.info("position_open_conflict", nft_id=nft_id, onchain_position_id=onchain_position_id)
        raise NFTAlreadyStakedError(f"NFT {nft_id} is already staked") from exc
    await db.refresh(position)

    logger.info(
        "position_opened",
        position_id=position.id,
        user_id=user_id,
        nft_id=position.nft_id,
        duration=staking_duration,
    )
    return position


async def unstake_position(
    db: AsyncSession,
    position_id: int,
    *,
    user_id: int | None = None,
    proof: UnstakeProof | None = None,
    force: bool = False,
    now: datetime | None = None,
) -> StakingPosition:
    """Unstake a matured position, or any active one with ``force`` (admin unlock).

    The status change is a compare-and-set on ``status = 'active'``: of two
    overlapping unstakes exactly one commits and decrements ``total_staked``.
    """
    now = now or utcnow()
    position = await get_position(db, position_id)
    if user_id is not None and position.user_id != user_id:
        raise PositionNotFoundError(position_id)
    if position.status != STATUS_ACTIVE:
        raise UnstakeNotAllowedError(f"Position {position_id} is already unstaked")
    if not force and not can_unstake(position, now):
        raise UnstakeNotAllowedError(
            f"Position {position_id} is locked until {position.unstake_at.isoformat()}"
        )

    changes = unstake_changes(position, proof, now)
    result = await db.execute(
        update(StakingPosition)
        .where(StakingPosition.id == position_id, StakingPosition.status == STATUS_ACTIVE)
        .values(**changes)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        raise UnstakeNotAllowedError(f"Position {position_id} is already unstaked")
    await db.execute(
        update(StakingContract)
        .where(StakingContract.id == position.contract_id, StakingContract.total_staked > 0)
        .values(total_staked=StakingContract.total_staked - 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(position)

    logger.info(
        "position_unstaked",
        position_id=position.id,
        forced=force,
        penalty=position.penalty_amount,
    )
    return position

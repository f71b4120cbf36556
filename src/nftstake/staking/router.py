"""Staking API: distribution admin, verification, ledger reads and user actions."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from nftstake.database import get_session
from nftstake.dependencies import (
    get_distribution_engine,
    get_scheduler,
    get_verification_service,
    require_admin_key,
)
from nftstake.staking.engine import BatchSummary, RewardDistributionEngine
from nftstake.staking.ledger import (
    get_contract_metrics,
    get_monthly_distribution_summary,
    get_user_reward_history,
    get_user_total_rewards,
    rebuild_reward_summary,
)
from nftstake.staking.positions import UnstakeProof, open_position, unstake_position
from nftstake.staking.registry import calculate_projected_rewards, get_contract
from nftstake.staking.scheduler import DistributionScheduler
from nftstake.staking.schemas import (
    AnomalyResponse,
    BatchSummaryResponse,
    ClaimResponse,
    ConsistencyResponse,
    ContractMetricsResponse,
    ContractMonthMetrics,
    DistributeRequest,
    MonthlySummaryResponse,
    MonthlySummaryRow,
    PendingRewardsResponse,
    PositionResponse,
    ProjectionResponse,
    RewardHistoryEntry,
    SchedulerStatusResponse,
    StakeRequest,
    UnstakeRequest,
    UserRewardsResponse,
    UserTotalsResponse,
    VerificationResponse,
)
from nftstake.staking.verification import VerificationService

router = APIRouter(prefix="/api/v1/staking", tags=["Staking"])
admin = [Depends(require_admin_key)]


def _summary_response(summary: BatchSummary) -> BatchSummaryResponse:
    return BatchSummaryResponse.model_validate(summary.to_dict())


def _position_response(position: object) -> PositionResponse:
    return PositionResponse.model_validate(position)


# ── Distribution (admin) ──


@router.post("/distribute", response_model=BatchSummaryResponse, dependencies=admin)
async def distribute(
    body: DistributeRequest | None = None,
    scheduler: DistributionScheduler = Depends(get_scheduler),  # noqa: B008
) -> BatchSummaryResponse:
    """Manual distribution over the given positions, or a full monthly run."""
    position_ids = body.position_ids if body is not None else None
    summary = await scheduler.run_manual(position_ids)
    return _summary_response(summary)


@router.post("/distribution/reconcile", response_model=BatchSummaryResponse, dependencies=admin)
async def reconcile(
    scheduler: DistributionScheduler = Depends(get_scheduler),  # noqa: B008
) -> BatchSummaryResponse:
    summary = await scheduler.run_daily_sweep()
    return _summary_response(summary)


@router.get("/distribution/status", response_model=SchedulerStatusResponse, dependencies=admin)
async def distribution_status(
    scheduler: DistributionScheduler = Depends(get_scheduler),  # noqa: B008
) -> SchedulerStatusResponse:
    state = await scheduler.status()
    return SchedulerStatusResponse.model_validate(state.to_dict())


@router.get("/distribution/monthly", response_model=MonthlySummaryResponse)
async def monthly_summary(
    year: int = Query(ge=2000, le=2100),
    month: int = Query(ge=1, le=12),
    db: AsyncSession = Depends(get_session),  # noqa: B008
) -> MonthlySummaryResponse:
    rows = await get_monthly_distribution_summary(db, year, month)
    return MonthlySummaryResponse(year=year, month=month, rows=[MonthlySummaryRow(**row) for row in rows])


# ── Verification (admin) ──


@router.post("/positions/{position_id}/verify", response_model=VerificationResponse, dependencies=admin)
async def verify_position(
    position_id: int,
    verification: VerificationService = Depends(get_verification_service),  # noqa: B008
) -> VerificationResponse:
    result = await verification.verify_position(position_id, use_cache=False)
    return VerificationResponse(**result.to_dict())


@router.get("/consistency", response_model=ConsistencyResponse, dependencies=admin)
async def consistency(
    blockchain: str | None = Query(default=None),
    verification: VerificationService = Depends(get_verification_service),  # noqa: B008
) -> ConsistencyResponse:
    return ConsistencyResponse(**await verification.check_data_consistency(blockchain))


@router.get("/anomalies", response_model=AnomalyResponse, dependencies=admin)
async def anomalies(
    window_hours: int = Query(default=24, ge=1, le=24 * 30),
    verification: VerificationService = Depends(get_verification_service),  # noqa: B008
) -> AnomalyResponse:
    return AnomalyResponse(**await verification.detect_anomalies(window_hours))


@router.post("/positions/{position_id}/emergency-unlock", response_model=PositionResponse, dependencies=admin)
async def emergency_unlock(
    position_id: int,
    body: UnstakeRequest | None = None,
    db: AsyncSession = Depends(get_session),  # noqa: B008
) -> PositionResponse:
    """Unstake before maturity; the early penalty applies."""
    proof = UnstakeProof(body.tx_hash, body.block_number) if body is not None else None
    position = await unstake_position(db, position_id, proof=proof, force=True)
    return _position_response(position)


@router.post("/positions/{position_id}/rebuild-summary", response_model=PositionResponse, dependencies=admin)
async def rebuild_summary(
    position_id: int,
    db: AsyncSession = Depends(get_session),  # noqa: B008
) -> PositionResponse:
    position = await rebuild_reward_summary(db, position_id)
    return _position_response(position)


# ── Contracts ──


@router.get("/contracts/{contract_id}/metrics", response_model=ContractMetricsResponse)
async def contract_metrics(
    contract_id: int,
    days: int | None = Query(default=None, ge=1),
    db: AsyncSession = Depends(get_session),  # noqa: B008
) -> ContractMetricsResponse:
    await get_contract(db, contract_id)
    rows = await get_contract_metrics(db, contract_id, days)
    return ContractMetricsResponse(contract_id=contract_id, months=[ContractMonthMetrics(**row) for row in rows])


@router.get("/contracts/{contract_id}/projection", response_model=ProjectionResponse)
async def contract_projection(
    contract_id: int,
    duration: int = Query(),
    nft_count: int = Query(default=1, ge=1, le=1000),
    db: AsyncSession = Depends(get_session),  # noqa: B008
) -> ProjectionResponse:
    contract = await get_contract(db, contract_id)
    return ProjectionResponse(**calculate_projected_rewards(contract, duration, nft_count))


# ── Users ──


@router.get("/users/{user_id}/rewards", response_model=UserRewardsResponse)
async def user_rewards(
    user_id: int,
    days: int | None = Query(default=None, ge=1),
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_session),  # noqa: B008
) -> UserRewardsResponse:
    totals = await get_user_total_rewards(db, user_id, days)
    rows, total = await get_user_reward_history(db, user_id, page, per_page)
    return UserRewardsResponse(
        totals=UserTotalsResponse(**totals),
        history=[RewardHistoryEntry.model_validate(row) for row in rows],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.get("/users/{user_id}/pending", response_model=PendingRewardsResponse)
async def user_pending(
    user_id: int,
    engine: RewardDistributionEngine = Depends(get_distribution_engine),  # noqa: B008
) -> PendingRewardsResponse:
    return PendingRewardsResponse.model_validate(await engine.calculate_user_pending_rewards(user_id))


@router.post("/users/{user_id}/positions", response_model=PositionResponse, status_code=201)
async def stake(
    user_id: int,
    body: StakeRequest,
    db: AsyncSession = Depends(get_session),  # noqa: B008
) -> PositionResponse:
    position = await open_position(
        db,
        user_id=user_id,
        contract_id=body.contract_id,
        wallet_address=body.wallet_address,
        nft_token_id=body.nft_token_id,
        staking_duration=body.staking_duration,
        onchain_position_id=body.onchain_position_id,
    )
    return _position_response(position)


@router.post("/users/{user_id}/positions/{position_id}/unstake", response_model=PositionResponse)
async def unstake(
    user_id: int,
    position_id: int,
    body: UnstakeRequest | None = None,
    db: AsyncSession = Depends(get_session),  # noqa: B008
) -> PositionResponse:
    proof = UnstakeProof(body.tx_hash, body.block_number) if body is not None else None
    position = await unstake_position(db, position_id, user_id=user_id, proof=proof)
    return _position_response(position)


@router.post("/users/{user_id}/positions/{position_id}/claim", response_model=ClaimResponse)
async def claim(
    user_id: int,
    position_id: int,
    engine: RewardDistributionEngine = Depends(get_distribution_engine),  # noqa: B008
) -> ClaimResponse:
    result = await engine.claim_rewards(user_id, position_id)
    return ClaimResponse(
        position_id=result.position_id,
        tickets=result.tickets,
        months=result.months,
        bonus_multiplier=result.bonus_multiplier,
        effective_value=result.effective_value,
        distribution_type=result.distribution_type,
    )

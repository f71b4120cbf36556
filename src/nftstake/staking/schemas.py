"""Pydantic schemas for the staking API."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# --- Distribution ---


class DistributeRequest(BaseModel):
    position_ids: list[int] | None = None


class PositionResultResponse(BaseModel):
    position_id: int
    success: bool
    tickets: int
    months: int
    bonus_multiplier: float
    effective_value: float
    distribution_type: str | None = None
    skipped: bool = False
    message: str | None = None
    error_code: str | None = None


class BatchSummaryResponse(BaseModel):
    run_id: int | None = None
    total_processed: int
    successful: int
    failed: int
    tickets_distributed: int
    execution_time_ms: int
    results: list[PositionResultResponse]


class DistributionRunResponse(BaseModel):
    id: int
    trigger: str
    status: str
    started_at: datetime
    finished_at: datetime | None = None
    total_processed: int
    successful: int
    failed: int
    tickets_distributed: int
    execution_time_ms: int | None = None


class SchedulerStatusResponse(BaseModel):
    last_run: DistributionRunResponse | None = None
    next_run: datetime
    total_distributed: int
    total_errors: int
    is_running: bool


# --- Positions ---


class StakeRequest(BaseModel):
    contract_id: int
    wallet_address: str = Field(min_length=1, max_length=64)
    nft_token_id: str = Field(min_length=1, max_length=128)
    staking_duration: int
    onchain_position_id: str | None = None


class UnstakeRequest(BaseModel):
    tx_hash: str | None = None
    block_number: int | None = None


class PositionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    contract_id: int
    nft_id: str
    wallet_address: str
    staking_duration: int
    staked_at: datetime
    unstake_at: datetime
    actual_unstaked_at: datetime | None = None
    status: str
    last_reward_distribution: datetime | None = None
    total_rewards_earned: int
    penalty_applied: bool
    penalty_amount: int
    penalty_reason: str | None = None
    onchain_verified: bool
    integrity_score: int | None = None


class PendingPositionResponse(BaseModel):
    position_id: int
    contract_name: str
    nft_id: str
    staking_duration: int
    pending_months: int
    pending_tickets: int
    bonus_multiplier: float
    next_reward_date: datetime | None = None


class PendingRewardsResponse(BaseModel):
    user_id: int
    total_pending_tickets: int
    positions: list[PendingPositionResponse]


class ClaimResponse(BaseModel):
    position_id: int
    tickets: int
    months: int
    bonus_multiplier: float
    effective_value: float
    distribution_type: str | None = None


# --- Ledger ---


class RewardHistoryEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    position_id: int
    contract_id: int
    contract_name: str
    nft_id: str
    distribution_date: datetime
    distribution_period: str
    open_entry_tickets: int
    bonus_multiplier: float
    effective_value: float
    months_covered: int
    distribution_type: str
    distribution_source: str
    status: str
    failure_reason: str | None = None


class UserTotalsResponse(BaseModel):
    user_id: int
    total_tickets: int
    total_effective_value: float
    total_distributions: int
    average_multiplier: float


class UserRewardsResponse(BaseModel):
    totals: UserTotalsResponse
    history: list[RewardHistoryEntry]
    total: int
    page: int
    per_page: int


class ContractMonthMetrics(BaseModel):
    year: int
    month: int
    total_tickets: int
    total_effective_value: float
    unique_users: int
    total_distributions: int


class ContractMetricsResponse(BaseModel):
    contract_id: int
    months: list[ContractMonthMetrics]


class MonthlySummaryRow(BaseModel):
    contract_id: int
    contract_name: str
    contract_address: str
    blockchain: str
    staking_duration: int
    total_tickets: int
    total_effective_value: float
    position_count: int
    unique_users: int


class MonthlySummaryResponse(BaseModel):
    year: int
    month: int
    rows: list[MonthlySummaryRow]


class ProjectionResponse(BaseModel):
    contract_id: int
    contract_name: str
    duration: int
    nft_count: int
    monthly_tickets: int
    total_tickets: int
    bonus_multiplier: float
    effective_value: float
    breakdown: dict[str, float]


# --- Verification ---


class VerificationResponse(BaseModel):
    position_id: int
    verified: bool
    integrity_score: int
    discrepancies: list[dict[str, Any]]
    error: str | None = None


class ConsistencyResponse(BaseModel):
    total_checked: int
    inconsistencies: int
    consistency_score: int
    issues: list[dict[str, Any]]
    timestamp: datetime


class AnomalyResponse(BaseModel):
    time_window_hours: int
    total_anomalies: int
    anomalies: list[dict[str, Any]]
    risk_score: int
    timestamp: datetime

"""ORM models for staking contracts, positions, the reward ledger and run bookkeeping.

Tables are created by the Alembic migration ``001_staking_tables``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from nftstake.db.base import Base
from nftstake.db.types import JSONType, UTCDateTime

# ---------------------------------------------------------------------------
# Staking contracts (Contract Registry)
# ---------------------------------------------------------------------------


class StakingContract(Base):
    """Per-collection staking configuration with three fixed reward tiers."""

    __tablename__ = "staking_contracts"
    __table_args__ = (
        UniqueConstraint("blockchain", "contract_address", name="uq_staking_contracts_chain_address"),
        Index("idx_staking_contracts_active", "blockchain", "is_active"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    blockchain: Mapped[str] = mapped_column(String(16), nullable=False)
    contract_address: Mapped[str] = mapped_column(String(64), nullable=False)
    contract_name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default="true")

    # --- Validation ---
    is_validated: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")
    validated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    validation_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # --- Reward tiers ---
    six_months_tickets: Mapped[int] = mapped_column(Integer, default=5, server_default="5")
    six_months_multiplier: Mapped[float] = mapped_column(Float, default=1.1, server_default="1.1")
    twelve_months_tickets: Mapped[int] = mapped_column(Integer, default=12, server_default="12")
    twelve_months_multiplier: Mapped[float] = mapped_column(Float, default=1.25, server_default="1.25")
    three_years_tickets: Mapped[int] = mapped_column(Integer, default=30, server_default="30")
    three_years_multiplier: Mapped[float] = mapped_column(Float, default=1.5, server_default="1.5")

    # --- Aggregates (atomic increments only) ---
    total_staked: Mapped[int] = mapped_column(BigInteger, default=0, server_default="0")
    total_rewards_distributed: Mapped[int] = mapped_column(BigInteger, default=0, server_default="0")

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    positions: Mapped[list[StakingPosition]] = relationship("StakingPosition", back_populates="contract")

    @property
    def contract_id(self) -> str:
        return f"{self.blockchain}:{self.contract_address}"


# ---------------------------------------------------------------------------
# Staking positions (Position Store)
# ---------------------------------------------------------------------------


class StakingPosition(Base):
    """One staked NFT. Reward fields are written only by the distribution engine."""

    __tablename__ = "staking_positions"
    __table_args__ = (
        Index("idx_staking_positions_user_status", "user_id", "status"),
        Index("idx_staking_positions_contract_status", "contract_id", "status"),
        Index("idx_staking_positions_nft", "nft_contract_address", "nft_token_id"),
        Index("idx_staking_positions_eligibility", "status", "unstake_at", "last_reward_distribution"),
        # One active stake per NFT
        Index(
            "uq_staking_positions_active_nft",
            "blockchain",
            "nft_contract_address",
            "nft_token_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index(
            "uq_staking_positions_onchain",
            "onchain_position_id",
            unique=True,
            postgresql_where=text("onchain_position_id IS NOT NULL"),
            sqlite_where=text("onchain_position_id IS NOT NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    contract_id: Mapped[int] = mapped_column(Integer, ForeignKey("staking_contracts.id"), nullable=False)
    wallet_address: Mapped[str] = mapped_column(String(64), nullable=False)

    # --- NFT identity ---
    blockchain: Mapped[str] = mapped_column(String(16), nullable=False)
    nft_contract_address: Mapped[str] = mapped_column(String(64), nullable=False)
    nft_token_id: Mapped[str] = mapped_column(String(128), nullable=False)

    # --- Lifecycle ---
    staking_duration: Mapped[int] = mapped_column(Integer, nullable=False)
    staked_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    unstake_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    actual_unstaked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", server_default="active")

    # --- Rewards ---
    last_reward_distribution: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    total_rewards_earned: Mapped[int] = mapped_column(BigInteger, default=0, server_default="0")
    reward_summary: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)

    # --- Early unstake penalty ---
    penalty_applied: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")
    penalty_amount: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    penalty_reason: Mapped[str | None] = mapped_column(String(256), nullable=True)

    # --- Unstake proof ---
    unstaking_tx_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    unstaking_block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # --- On-chain linkage ---
    onchain_position_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    onchain_verified: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")
    integrity_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_verified_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    contract: Mapped[StakingContract] = relationship("StakingContract", back_populates="positions")

    @property
    def nft_id(self) -> str:
        return f"{self.blockchain}:{self.nft_contract_address}:{self.nft_token_id}"


# ---------------------------------------------------------------------------
# Reward History Ledger
# ---------------------------------------------------------------------------


class StakingRewardHistory(Base):
    """Append-only ledger entry. Never updated or deleted."""

    __tablename__ = "staking_reward_history"
    __table_args__ = (
        Index("idx_reward_history_user_date", "user_id", "distribution_date"),
        Index("idx_reward_history_position_date", "position_id", "distribution_date"),
        Index("idx_reward_history_contract_date", "contract_id", "distribution_date"),
        Index("idx_reward_history_period", "distribution_year", "distribution_month"),
        Index("idx_reward_history_status_date", "status", "distribution_date"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    position_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("staking_positions.id"), nullable=False)
    contract_id: Mapped[int] = mapped_column(Integer, ForeignKey("staking_contracts.id"), nullable=False)

    distribution_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    distribution_month: Mapped[int] = mapped_column(Integer, nullable=False)
    distribution_year: Mapped[int] = mapped_column(Integer, nullable=False)

    open_entry_tickets: Mapped[int] = mapped_column(Integer, nullable=False)
    bonus_multiplier: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    effective_value: Mapped[float] = mapped_column(Float, nullable=False)
    months_covered: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    distribution_type: Mapped[str] = mapped_column(String(16), nullable=False, default="monthly")
    distribution_source: Mapped[str] = mapped_column(String(16), nullable=False, default="scheduler")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="distributed")
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    ticket_ids: Mapped[list[str]] = mapped_column(JSONType, default=list)

    # --- Context frozen at distribution time ---
    blockchain: Mapped[str] = mapped_column(String(16), nullable=False)
    nft_contract_address: Mapped[str] = mapped_column(String(64), nullable=False)
    nft_token_id: Mapped[str] = mapped_column(String(128), nullable=False)
    contract_name: Mapped[str] = mapped_column(String(128), nullable=False)
    staking_duration: Mapped[int] = mapped_column(Integer, nullable=False)
    staking_start_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    staking_end_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())

    @property
    def nft_id(self) -> str:
        return f"{self.blockchain}:{self.nft_contract_address}:{self.nft_token_id}"

    @property
    def distribution_period(self) -> str:
        return f"{self.distribution_year}-{self.distribution_month:02d}"


# ---------------------------------------------------------------------------
# Scheduler bookkeeping
# ---------------------------------------------------------------------------


class DistributionLease(Base):
    """Lease row used as a cross-instance lock for distribution runs."""

    __tablename__ = "distribution_leases"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    holder: Mapped[str] = mapped_column(String(128), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class DistributionRun(Base):
    """One batch execution (monthly, reconciliation, manual or claim)."""

    __tablename__ = "distribution_runs"
    __table_args__ = (
        Index("idx_distribution_runs_started", "started_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trigger: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="running")
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    total_processed: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    successful: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    failed: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    tickets_distributed: Mapped[int] = mapped_column(BigInteger, default=0, server_default="0")
    execution_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

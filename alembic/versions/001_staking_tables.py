"""Staking contracts, positions, reward ledger and distribution bookkeeping.

Revision ID: 001_staking_tables
Revises:
Create Date: 2026-10-18
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_staking_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Staking Contracts ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS staking_contracts (
            id SERIAL PRIMARY KEY,
            blockchain VARCHAR(16) NOT NULL,
            contract_address VARCHAR(64) NOT NULL,
            contract_name VARCHAR(128) NOT NULL,
            description TEXT,
            is_active BOOLEAN NOT NULL DEFAULT TRUE,
            is_validated BOOLEAN NOT NULL DEFAULT FALSE,
            validated_at TIMESTAMPTZ,
            validation_notes TEXT,
            six_months_tickets INTEGER NOT NULL DEFAULT 5,
            six_months_multiplier DOUBLE PRECISION NOT NULL DEFAULT 1.1,
            twelve_months_tickets INTEGER NOT NULL DEFAULT 12,
            twelve_months_multiplier DOUBLE PRECISION NOT NULL DEFAULT 1.25,
            three_years_tickets INTEGER NOT NULL DEFAULT 30,
            three_years_multiplier DOUBLE PRECISION NOT NULL DEFAULT 1.5,
            total_staked BIGINT NOT NULL DEFAULT 0,
            total_rewards_distributed BIGINT NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ,
            CONSTRAINT uq_staking_contracts_chain_address UNIQUE (blockchain, contract_address),
            CHECK (six_months_tickets >= 0 AND twelve_months_tickets >= 0 AND three_years_tickets >= 0)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_staking_contracts_active
        ON staking_contracts(blockchain, is_active)
    """)

    # --- Staking Positions ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS staking_positions (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL,
            contract_id INTEGER NOT NULL REFERENCES staking_contracts(id),
            wallet_address VARCHAR(64) NOT NULL,
            blockchain VARCHAR(16) NOT NULL,
            nft_contract_address VARCHAR(64) NOT NULL,
            nft_token_id VARCHAR(128) NOT NULL,
            staking_duration INTEGER NOT NULL CHECK (staking_duration IN (6, 12, 36)),
            staked_at TIMESTAMPTZ NOT NULL,
            unstake_at TIMESTAMPTZ NOT NULL,
            actual_unstaked_at TIMESTAMPTZ,
            status VARCHAR(16) NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'unstaked')),
            last_reward_distribution TIMESTAMPTZ,
            total_rewards_earned BIGINT NOT NULL DEFAULT 0,
            reward_summary JSONB NOT NULL DEFAULT '[]'::jsonb,
            penalty_applied BOOLEAN NOT NULL DEFAULT FALSE,
            penalty_amount INTEGER NOT NULL DEFAULT 0,
            penalty_reason VARCHAR(256),
            unstaking_tx_hash VARCHAR(128),
            unstaking_block_number BIGINT,
            onchain_position_id VARCHAR(128),
            onchain_verified BOOLEAN NOT NULL DEFAULT FALSE,
            integrity_score INTEGER,
            last_verified_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_staking_positions_user_status
        ON staking_positions(user_id, status)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_staking_positions_contract_status
        ON staking_positions(contract_id, status)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_staking_positions_nft
        ON staking_positions(nft_contract_address, nft_token_id)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_staking_positions_eligibility
        ON staking_positions(status, unstake_at, last_reward_distribution)
    """)
    # One active stake per NFT
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_staking_positions_active_nft
        ON staking_positions(blockchain, nft_contract_address, nft_token_id)
        WHERE status = 'active'
    """)
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_staking_positions_onchain
        ON staking_positions(onchain_position_id)
        WHERE onchain_position_id IS NOT NULL
    """)

    # --- Reward History Ledger (append-only) ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS staking_reward_history (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL,
            position_id BIGINT NOT NULL REFERENCES staking_positions(id),
            contract_id INTEGER NOT NULL REFERENCES staking_contracts(id),
            distribution_date TIMESTAMPTZ NOT NULL,
            distribution_month INTEGER NOT NULL CHECK (distribution_month BETWEEN 1 AND 12),
            distribution_year INTEGER NOT NULL,
            open_entry_tickets INTEGER NOT NULL CHECK (open_entry_tickets >= 0),
            bonus_multiplier DOUBLE PRECISION NOT NULL DEFAULT 1.0,
            effective_value DOUBLE PRECISION NOT NULL,
            months_covered INTEGER NOT NULL DEFAULT 1,
            distribution_type VARCHAR(16) NOT NULL DEFAULT 'monthly'
                CHECK (distribution_type IN ('monthly', 'missed', 'manual', 'claim')),
            distribution_source VARCHAR(16) NOT NULL DEFAULT 'scheduler'
                CHECK (distribution_source IN ('scheduler', 'manual', 'api')),
            status VARCHAR(16) NOT NULL DEFAULT 'distributed'
                CHECK (status IN ('distributed', 'failed')),
            failure_reason TEXT,
            ticket_ids JSONB NOT NULL DEFAULT '[]'::jsonb,
            blockchain VARCHAR(16) NOT NULL,
            nft_contract_address VARCHAR(64) NOT NULL,
            nft_token_id VARCHAR(128) NOT NULL,
            contract_name VARCHAR(128) NOT NULL,
            staking_duration INTEGER NOT NULL,
            staking_start_date TIMESTAMPTZ NOT NULL,
            staking_end_date TIMESTAMPTZ NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_reward_history_user_date
        ON staking_reward_history(user_id, distribution_date DESC)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_reward_history_position_date
        ON staking_reward_history(position_id, distribution_date DESC)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_reward_history_contract_date
        ON staking_reward_history(contract_id, distribution_date DESC)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_reward_history_period
        ON staking_reward_history(distribution_year, distribution_month)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_reward_history_status_date
        ON staking_reward_history(status, distribution_date)
    """)

    # --- Distribution lease + run log ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS distribution_leases (
            name VARCHAR(64) PRIMARY KEY,
            holder VARCHAR(128) NOT NULL,
            acquired_at TIMESTAMPTZ NOT NULL,
            expires_at TIMESTAMPTZ NOT NULL
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS distribution_runs (
            id SERIAL PRIMARY KEY,
            trigger VARCHAR(16) NOT NULL,
            status VARCHAR(16) NOT NULL DEFAULT 'running',
            started_at TIMESTAMPTZ NOT NULL,
            finished_at TIMESTAMPTZ,
            total_processed INTEGER NOT NULL DEFAULT 0,
            successful INTEGER NOT NULL DEFAULT 0,
            failed INTEGER NOT NULL DEFAULT 0,
            tickets_distributed BIGINT NOT NULL DEFAULT 0,
            execution_time_ms INTEGER,
            error TEXT
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_distribution_runs_started
        ON distribution_runs(started_at DESC)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS distribution_runs CASCADE")
    op.execute("DROP TABLE IF EXISTS distribution_leases CASCADE")
    op.execute("DROP TABLE IF EXISTS staking_reward_history CASCADE")
    op.execute("DROP TABLE IF EXISTS staking_positions CASCADE")
    op.execute("DROP TABLE IF EXISTS staking_contracts CASCADE")

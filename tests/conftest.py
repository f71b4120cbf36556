"""Shared test fixtures.

Every test gets its own on-disk SQLite database (aiosqlite) created from the
ORM metadata, so the suite runs without PostgreSQL or Redis.
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator, Awaitable, Callable, Generator
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

os.environ.setdefault("NFTSTAKE_LOG_FORMAT", "console")
os.environ.setdefault("NFTSTAKE_ADMIN_API_KEY", "test-admin-key")

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nftstake.config import get_settings
from nftstake.database import close_db, get_engine, get_session_factory, init_db
from nftstake.db.base import Base
from nftstake.db.models import StakingContract, StakingPosition
from nftstake.staking.collaborators import BlockchainReader, RewardNotifier, TicketIssuer
from nftstake.staking.engine import RewardDistributionEngine
from nftstake.staking.errors import TicketIssuanceError
from nftstake.staking.periods import add_months
from nftstake.staking.scheduler import DistributionScheduler
from nftstake.staking.verification import VerificationService

# Fixed clock for distribution tests: mid-month, mid-day UTC.
NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)

ADMIN_HEADERS = {"X-Admin-Key": "test-admin-key"}

EVM_ADDRESS = "0x" + "ab" * 20


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh SQLite database with the full schema."""
    await init_db(f"sqlite+aiosqlite:///{tmp_path / 'nftstake.db'}")
    engine = get_engine()

    @event.listens_for(engine.sync_engine, "connect")
    def _sqlite_pragmas(dbapi_connection: Any, _record: Any) -> None:  # noqa: ANN401
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield get_session_factory()

    await close_db()


@pytest_asyncio.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """Direct database session for seeding and assertions."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def ticket_issuer() -> AsyncMock:
    """Ticket service double. Users listed in ``failing_users`` get a TicketIssuanceError."""
    issuer = AsyncMock(spec=TicketIssuer)
    issuer.failing_users = set()
    issued: list[tuple[int, int]] = []

    async def _mint(user_id: int, count: int) -> list[str]:
        if user_id in issuer.failing_users:
            raise TicketIssuanceError("Ticket service unavailable")
        issued.append((user_id, count))
        return [f"ticket-{user_id}-{len(issued)}-{i}" for i in range(count)]

    issuer.mint_free_entries.side_effect = _mint
    issuer.issued = issued
    return issuer


@pytest.fixture
def notifier() -> AsyncMock:
    return AsyncMock(spec=RewardNotifier)


@pytest.fixture
def blockchain_reader() -> AsyncMock:
    return AsyncMock(spec=BlockchainReader)


@pytest.fixture
def distribution_engine(
    session_factory: async_sessionmaker[AsyncSession],
    ticket_issuer: AsyncMock,
    notifier: AsyncMock,
) -> RewardDistributionEngine:
    return RewardDistributionEngine(
        session_factory,
        ticket_issuer,
        notifier,
        concurrency=1,
        mint_timeout=2.0,
        notification_timeout=1.0,
        isolation_level=None,
    )


@pytest.fixture
def scheduler(
    distribution_engine: RewardDistributionEngine,
    session_factory: async_sessionmaker[AsyncSession],
) -> DistributionScheduler:
    return DistributionScheduler(distribution_engine, session_factory, lease_ttl_seconds=600)


@pytest.fixture
def verification_service(
    session_factory: async_sessionmaker[AsyncSession],
    blockchain_reader: AsyncMock,
) -> VerificationService:
    return VerificationService(
        session_factory,
        blockchain_reader,
        cache_ttl_seconds=300,
        max_retries=2,
        retry_delay_seconds=0,
    )


@pytest.fixture
def make_contract(db_session: AsyncSession) -> Callable[..., Awaitable[StakingContract]]:
    """Factory for validated, active contracts with the default tiers."""
    counter = {"n": 0}

    async def _make(**overrides: Any) -> StakingContract:  # noqa: ANN401
        counter["n"] += 1
        values: dict[str, Any] = {
            "blockchain": "ethereum",
            "contract_address": "0x" + f"{counter['n']:040x}",
            "contract_name": f"Collection {counter['n']}",
            "is_active": True,
            "is_validated": True,
            "validated_at": NOW - timedelta(days=365),
            "six_months_tickets": 5,
            "six_months_multiplier": 1.1,
            "twelve_months_tickets": 12,
            "twelve_months_multiplier": 1.25,
            "three_years_tickets": 30,
            "three_years_multiplier": 1.5,
            "total_staked": 0,
            "total_rewards_distributed": 0,
            "created_at": NOW - timedelta(days=365),
        }
        values.update(overrides)
        contract = StakingContract(**values)
        db_session.add(contract)
        await db_session.commit()
        return contract

    return _make


@pytest.fixture
def make_position(db_session: AsyncSession) -> Callable[..., Awaitable[StakingPosition]]:
    """Factory for active positions; ``staked_at`` defaults to 35 days before NOW."""
    counter = {"n": 0}

    async def _make(contract: StakingContract, **overrides: Any) -> StakingPosition:  # noqa: ANN401
        counter["n"] += 1
        duration = overrides.pop("staking_duration", 12)
        staked_at = overrides.pop("staked_at", NOW - timedelta(days=35))
        values: dict[str, Any] = {
            "user_id": 1,
            "contract_id": contract.id,
            "wallet_address": EVM_ADDRESS,
            "blockchain": contract.blockchain,
            "nft_contract_address": contract.contract_address,
            "nft_token_id": str(counter["n"]),
            "staking_duration": duration,
            "staked_at": staked_at,
            "unstake_at": add_months(staked_at, duration),
            "status": "active",
            "total_rewards_earned": 0,
            "reward_summary": [],
            "created_at": staked_at,
        }
        values.update(overrides)
        position = StakingPosition(**values)
        db_session.add(position)
        await db_session.commit()
        return position

    return _make


@pytest.fixture
def app(
    session_factory: async_sessionmaker[AsyncSession],
    distribution_engine: RewardDistributionEngine,
    scheduler: DistributionScheduler,
    verification_service: VerificationService,
) -> Generator[FastAPI, None, None]:
    """App with test doubles wired onto app.state (the lifespan does not run)."""
    from nftstake.main import create_app

    get_settings.cache_clear()
    application = create_app()
    application.state.distribution_engine = distribution_engine
    application.state.scheduler = scheduler
    application.state.verification_service = verification_service

    yield application

    application.dependency_overrides.clear()
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

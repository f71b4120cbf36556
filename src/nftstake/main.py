"""FastAPI application factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from nftstake.config import get_settings
from nftstake.database import close_db, get_session_factory, init_db
from nftstake.health.router import router as health_router
from nftstake.middleware import setup_middleware
from nftstake.redis_client import close_redis, get_redis, init_redis
from nftstake.staking.collaborators import (
    RedisRewardNotifier,
    build_blockchain_reader,
    build_ticket_issuer,
)
from nftstake.staking.engine import RewardDistributionEngine
from nftstake.staking.router import router as staking_router
from nftstake.staking.scheduler import DistributionScheduler
from nftstake.staking.verification import VerificationService


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    await init_redis(settings.redis_url)

    session_factory = get_session_factory()
    engine = RewardDistributionEngine.from_settings(
        settings,
        session_factory,
        build_ticket_issuer(settings),
        RedisRewardNotifier(get_redis()),
    )
    app.state.distribution_engine = engine
    app.state.scheduler = DistributionScheduler.from_settings(settings, engine, session_factory)
    app.state.verification_service = VerificationService.from_settings(
        settings, session_factory, build_blockchain_reader(settings)
    )

    yield

    await engine.drain_notifications()
    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="NFT Staking Rewards API",
        description="Staking positions, monthly open-entry ticket rewards and on-chain verification",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(staking_router)

    return app


app = create_app()

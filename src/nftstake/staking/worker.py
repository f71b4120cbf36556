"""Staking arq worker: monthly distribution, daily reconciliation, verification audit.

Import path for arq CLI: arq nftstake.staking.worker.WorkerSettings
"""

from __future__ import annotations

import logging

import redis.asyncio as aioredis
from arq import cron
from arq.connections import RedisSettings

from nftstake.config import get_settings
from nftstake.database import close_db, get_session_factory, init_db
from nftstake.middleware.logging import setup_logging
from nftstake.staking.collaborators import (
    RedisRewardNotifier,
    build_blockchain_reader,
    build_ticket_issuer,
)
from nftstake.staking.engine import RewardDistributionEngine
from nftstake.staking.errors import DistributionInProgressError
from nftstake.staking.scheduler import DistributionScheduler
from nftstake.staking.verification import VerificationService

logger = logging.getLogger(__name__)

settings = get_settings()


async def staking_startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize DB + Redis and build the distribution services."""
    setup_logging(settings)
    await init_db(settings.database_url)
    redis_client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=10,
    )
    session_factory = get_session_factory()
    engine = RewardDistributionEngine.from_settings(
        settings,
        session_factory,
        build_ticket_issuer(settings),
        RedisRewardNotifier(redis_client),
    )
    ctx["redis"] = redis_client
    ctx["scheduler"] = DistributionScheduler.from_settings(settings, engine, session_factory)
    ctx["verification"] = VerificationService.from_settings(
        settings, session_factory, build_blockchain_reader(settings)
    )
    logger.info("Staking worker started")


async def staking_shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    redis_client: aioredis.Redis | None = ctx.get("redis")
    if redis_client:
        await redis_client.aclose()
    await close_db()
    logger.info("Staking worker shut down")


async def monthly_reward_distribution(ctx: dict) -> None:  # type: ignore[type-arg]
    """Scheduled arq task: day 1 of every month, 02:00 UTC by default."""
    scheduler: DistributionScheduler = ctx["scheduler"]
    try:
        summary = await scheduler.run_monthly()
        logger.info(
            "Monthly distribution complete: %d processed, %d failed, %d tickets",
            summary.total_processed, summary.failed, summary.tickets_distributed,
        )
    except DistributionInProgressError:
        logger.info("Monthly distribution skipped: another run holds the lease")
    except Exception:
        logger.exception("Monthly distribution failed; will retry at the next tick")


async def daily_reconciliation_sweep(ctx: dict) -> None:  # type: ignore[type-arg]
    """Scheduled arq task: daily catch-up for positions that missed monthly runs."""
    scheduler: DistributionScheduler = ctx["scheduler"]
    try:
        summary = await scheduler.run_daily_sweep()
        logger.info(
            "Reconciliation sweep complete: %d processed, %d failed, %d tickets",
            summary.total_processed, summary.failed, summary.tickets_distributed,
        )
    except DistributionInProgressError:
        logger.info("Reconciliation sweep skipped: another run holds the lease")
    except Exception:
        logger.exception("Reconciliation sweep failed")


async def verification_audit(ctx: dict) -> None:  # type: ignore[type-arg]
    """Scheduled arq task: consistency check and anomaly scan over the last day."""
    verification: VerificationService = ctx["verification"]
    try:
        report = await verification.check_data_consistency()
        anomalies = await verification.detect_anomalies(window_hours=24)
        logger.info(
            "Verification audit: %d checked, score %d, %d anomalies (risk %d)",
            report["total_checked"], report["consistency_score"],
            anomalies["total_anomalies"], anomalies["risk_score"],
        )
    except Exception:
        logger.exception("Verification audit failed")


class WorkerSettings:
    """arq worker settings for the staking scheduler."""

    functions = [monthly_reward_distribution, daily_reconciliation_sweep, verification_audit]
    cron_jobs = [
        cron(
            monthly_reward_distribution,
            day=settings.monthly_run_day,
            hour=settings.monthly_run_hour,
            minute=0,
            unique=True,
        ),
        cron(daily_reconciliation_sweep, hour=settings.daily_sweep_hour, minute=0, unique=True),
        cron(verification_audit, hour=settings.verification_audit_hour, minute=0, unique=True),
    ]
    on_startup = staking_startup
    on_shutdown = staking_shutdown
    redis_settings = RedisSettings.from_dsn(settings.arq_redis_url)
    max_jobs = 4
    job_timeout = 3600  # a full monthly run can take a while
    allow_abort_jobs = True

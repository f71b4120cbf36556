"""Shared FastAPI dependencies."""

import secrets

from fastapi import Depends, Header, HTTPException, Request

from nftstake.config import Settings, get_settings
from nftstake.database import get_session as _get_session
from nftstake.staking.engine import RewardDistributionEngine
from nftstake.staking.scheduler import DistributionScheduler
from nftstake.staking.verification import VerificationService

get_db = _get_session


def get_distribution_engine(request: Request) -> RewardDistributionEngine:
    """Engine built in the app lifespan."""
    return request.app.state.distribution_engine


def get_scheduler(request: Request) -> DistributionScheduler:
    return request.app.state.scheduler


def get_verification_service(request: Request) -> VerificationService:
    return request.app.state.verification_service


async def require_admin_key(
    x_admin_key: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),  # noqa: B008
) -> None:
    """Reject the request unless X-Admin-Key matches the configured key."""
    if not settings.admin_api_key:
        raise HTTPException(status_code=503, detail="Admin API is not configured")
    if x_admin_key is None or not secrets.compare_digest(x_admin_key, settings.admin_api_key):
        raise HTTPException(status_code=401, detail="Invalid admin key")

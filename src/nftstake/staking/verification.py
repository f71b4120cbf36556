"""On-chain verification, consistency audits and anomaly detection."""

from __future__ import annotations

import asyncio
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nftstake.config import Settings
from nftstake.db.models import StakingPosition, StakingRewardHistory
from nftstake.staking.collaborators import BlockchainReader, OnChainPosition
from nftstake.staking.errors import PositionNotFoundError
from nftstake.staking.ledger import STATUS_DISTRIBUTED
from nftstake.staking.periods import utcnow
from nftstake.staking.positions import STATUS_ACTIVE

logger = structlog.get_logger()

# (field, weight); weights sum to 100
FIELD_WEIGHTS: tuple[tuple[str, int], ...] = (
    ("owner", 25),
    ("nftContract", 20),
    ("tokenId", 20),
    ("active", 25),
    ("duration", 10),
)

ONCHAIN_DURATION_MONTHS = {0: 6, 1: 12, 2: 36}

SEVERITY_POINTS = {"high": 10, "medium": 5, "low": 1}
MAX_RISK_SCORE = 100
CONSISTENCY_CHECK_LIMIT = 1000


@dataclass
class VerificationResult:
    position_id: int
    verified: bool
    integrity_score: int = 0
    discrepancies: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "position_id": self.position_id,
            "verified": self.verified,
            "integrity_score": self.integrity_score,
            "discrepancies": self.discrepancies,
            "error": self.error,
        }


def score_position(
    position: StakingPosition,
    onchain: OnChainPosition,
    threshold: int = 90,
) -> tuple[int, bool, list[dict[str, Any]]]:
    """Weighted field comparison. Returns (integrity score 0-100, verified, discrepancies)."""
    pairs = {
        "owner": (onchain.owner.lower(), (position.wallet_address or "").lower()),
        "nftContract": (onchain.nft_contract.lower(), (position.nft_contract_address or "").lower()),
        "tokenId": (str(onchain.token_id), str(position.nft_token_id)),
        "active": (onchain.is_active, position.status == STATUS_ACTIVE),
        "duration": (ONCHAIN_DURATION_MONTHS.get(onchain.duration_code), position.staking_duration),
    }
    matched = 0
    max_score = 0
    discrepancies = []
    for name, weight in FIELD_WEIGHTS:
        max_score += weight
        chain_value, db_value = pairs[name]
        if chain_value == db_value:
            matched += weight
        else:
            discrepancies.append({"field": name, "contract": chain_value, "database": db_value})

    score = round(matched / max_score * 100)
    return score, score >= threshold, discrepancies


def risk_score(anomalies: list[dict[str, Any]]) -> int:
    return min(sum(SEVERITY_POINTS.get(a.get("severity", ""), 0) for a in anomalies), MAX_RISK_SCORE)


class VerificationService:
    """Cross-checks stored positions against the chain."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        reader: BlockchainReader,
        *,
        threshold: int = 90,
        cache_ttl_seconds: float = 300,
        max_retries: int = 3,
        retry_delay_seconds: float = 1.0,
        concurrency: int = 10,
        wallet_threshold: int = 10,
    ) -> None:
        self.session_factory = session_factory
        self.reader = reader
        self.threshold = threshold
        self.cache_ttl = cache_ttl_seconds
        self.max_retries = max_retries
        self.retry_delay = retry_delay_seconds
        self.concurrency = max(1, concurrency)
        self.wallet_threshold = wallet_threshold
        self._cache: dict[tuple[str, str], tuple[float, OnChainPosition | None]] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        reader: BlockchainReader,
    ) -> VerificationService:
        return cls(
            session_factory,
            reader,
            threshold=settings.verification_threshold,
            cache_ttl_seconds=settings.verification_cache_ttl_seconds,
            max_retries=settings.verification_max_retries,
            retry_delay_seconds=settings.verification_retry_delay_seconds,
            concurrency=settings.verification_concurrency,
            wallet_threshold=settings.anomaly_wallet_threshold,
        )

    # ------------------------------------------------------------------
    # Chain reads
    # ------------------------------------------------------------------

    async def _read_with_retry(self, blockchain: str, onchain_id: str) -> OnChainPosition | None:
        attempt = 0
        while True:
            try:
                return await self.reader.verify_position(blockchain, onchain_id)
            except Exception:
                if attempt >= self.max_retries:
                    raise
                attempt += 1
                logger.warning("onchain_read_retry", blockchain=blockchain, onchain_id=onchain_id, attempt=attempt)
                await asyncio.sleep(self.retry_delay * attempt)

    async def read_onchain(self, blockchain: str, onchain_id: str, use_cache: bool = True) -> OnChainPosition | None:
        key = (blockchain, onchain_id)
        if use_cache:
            cached = self._cache.get(key)
            if cached is not None and cached[0] > time.monotonic():
                return cached[1]
        onchain = await self._read_with_retry(blockchain, onchain_id)
        self._remember(key, onchain)
        return onchain

    def _remember(self, key: tuple[str, str], onchain: OnChainPosition | None) -> None:
        now = time.monotonic()
        expired = [k for k, (expires_at, _) in self._cache.items() if expires_at <= now]
        for stale in expired:
            del self._cache[stale]
        self._cache[key] = (now + self.cache_ttl, onchain)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def verify_position(self, position_id: int, use_cache: bool = True) -> VerificationResult:
        """Verify one position and persist its integrity score."""
        async with self.session_factory() as db:
            position = await db.get(StakingPosition, position_id)
            if position is None:
                raise PositionNotFoundError(position_id)
            result = await self._verify(position, use_cache)
            position.onchain_verified = result.verified
            position.integrity_score = result.integrity_score
            position.last_verified_at = utcnow()
            await db.commit()

        logger.info(
            "position_verified",
            position_id=position_id,
            verified=result.verified,
            integrity_score=result.integrity_score,
        )
        return result

    async def _verify(self, position: StakingPosition, use_cache: bool) -> VerificationResult:
        if not position.onchain_position_id:
            return VerificationResult(position.id, False, error="No on-chain position id")
        try:
            onchain = await self.read_onchain(position.blockchain, position.onchain_position_id, use_cache)
        except Exception as exc:
            logger.warning("onchain_read_failed", position_id=position.id, error=str(exc))
            return VerificationResult(position.id, False, error=str(exc))
        if onchain is None:
            return VerificationResult(
                position.id,
                False,
                discrepancies=[{"field": "position", "contract": None, "database": position.onchain_position_id}],
                error="Position not found on chain",
            )
        score, verified, discrepancies = score_position(position, onchain, self.threshold)
        return VerificationResult(position.id, verified, score, discrepancies)

    async def batch_verify(self, position_ids: list[int], use_cache: bool = True) -> list[VerificationResult]:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _one(position_id: int) -> VerificationResult:
            async with semaphore:
                try:
                    return await self.verify_position(position_id, use_cache)
                except PositionNotFoundError as exc:
                    return VerificationResult(position_id, False, error=str(exc))

        return list(await asyncio.gather(*(_one(pid) for pid in position_ids)))

    # ------------------------------------------------------------------
    # Audits
    # ------------------------------------------------------------------

    async def check_data_consistency(self, blockchain: str | None = None) -> dict[str, Any]:
        """Audit active positions against the chain and against the ledger."""
        async with self.session_factory() as db:
            query = select(StakingPosition).where(StakingPosition.status == STATUS_ACTIVE)
            if blockchain:
                query = query.where(StakingPosition.blockchain == blockchain.lower())
            positions = list(
                (await db.execute(query.order_by(StakingPosition.id).limit(CONSISTENCY_CHECK_LIMIT))).scalars().all()
            )
            ledger = await _ledger_by_position(db, [p.id for p in positions])

        issues: list[dict[str, Any]] = []
        failing: set[int] = set()

        def _issue(position: StakingPosition, kind: str, **details: Any) -> None:  # noqa: ANN401
            failing.add(position.id)
            issues.append({"type": kind, "position_id": position.id, "blockchain": position.blockchain, **details})

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _chain_check(position: StakingPosition) -> None:
            if not position.onchain_position_id:
                _issue(
                    position,
                    "missing_onchain_id",
                    nft_contract=position.nft_contract_address,
                    token_id=position.nft_token_id,
                )
                return
            async with semaphore:
                result = await self._verify(position, use_cache=False)
            if not result.verified:
                _issue(
                    position,
                    "verification_failed",
                    onchain_position_id=position.onchain_position_id,
                    integrity_score=result.integrity_score,
                    discrepancies=result.discrepancies,
                    error=result.error,
                )

        await asyncio.gather(*(_chain_check(p) for p in positions))

        for position in positions:
            ledger_total, ledger_count = ledger.get(position.id, (0, 0))
            if (position.total_rewards_earned or 0) != ledger_total:
                _issue(
                    position,
                    "ledger_mismatch",
                    total_rewards_earned=position.total_rewards_earned,
                    ledger_total=ledger_total,
                )
            summary = position.reward_summary or []
            summary_total = sum(int(entry.get("open_entry_tickets", 0)) for entry in summary)
            if len(summary) != ledger_count or summary_total != ledger_total:
                _issue(
                    position,
                    "summary_drift",
                    summary_entries=len(summary),
                    ledger_entries=ledger_count,
                    summary_total=summary_total,
                    ledger_total=ledger_total,
                )

        checked = len(positions)
        score = round((checked - len(failing)) / checked * 100) if checked else 100
        logger.info("consistency_check_completed", checked=checked, issues=len(issues), score=score)
        return {
            "total_checked": checked,
            "inconsistencies": len(issues),
            "consistency_score": score,
            "issues": issues,
            "timestamp": utcnow(),
        }

    async def detect_anomalies(self, window_hours: int = 24, now: datetime | None = None) -> dict[str, Any]:
        """Flag bursty wallets, hot contracts and recent verification failures."""
        now = now or utcnow()
        cutoff = now - timedelta(hours=window_hours)
        async with self.session_factory() as db:
            recent = (
                await db.execute(
                    select(StakingPosition.wallet_address, StakingPosition.nft_contract_address).where(
                        StakingPosition.created_at >= cutoff
                    )
                )
            ).all()
            failures = (
                await db.execute(
                    select(StakingPosition.id, StakingPosition.integrity_score).where(
                        StakingPosition.last_verified_at >= cutoff,
                        StakingPosition.onchain_verified.is_(False),
                    )
                )
            ).all()

        wallets = Counter(wallet.lower() for wallet, _ in recent)
        contracts = Counter(contract.lower() for _, contract in recent)
        anomalies: list[dict[str, Any]] = []

        for wallet, count in wallets.items():
            if count > self.wallet_threshold:
                anomalies.append({
                    "type": "high_frequency_staking",
                    "wallet": wallet,
                    "frequency": count,
                    "severity": "high" if count > self.wallet_threshold * 2 else "medium",
                })

        if contracts:
            average = sum(contracts.values()) / len(contracts)
            for contract, count in contracts.items():
                if count > average * 3:
                    anomalies.append({
                        "type": "unusual_contract_activity",
                        "contract": contract,
                        "frequency": count,
                        "average_activity": round(average),
                        "severity": "high" if count > average * 5 else "medium",
                    })

        for position_id, integrity in failures:
            anomalies.append({
                "type": "verification_failure",
                "position_id": position_id,
                "integrity_score": integrity,
                "severity": "low",
            })

        return {
            "time_window_hours": window_hours,
            "total_anomalies": len(anomalies),
            "anomalies": anomalies,
            "risk_score": risk_score(anomalies),
            "timestamp": now,
        }


async def _ledger_by_position(db: AsyncSession, position_ids: list[int]) -> dict[int, tuple[int, int]]:
    """position_id -> (ticket sum over all rows, count of distributed rows)."""
    if not position_ids:
        return {}
    result = await db.execute(
        select(
            StakingRewardHistory.position_id,
            func.coalesce(func.sum(StakingRewardHistory.open_entry_tickets), 0),
            func.count(StakingRewardHistory.id).filter(StakingRewardHistory.status == STATUS_DISTRIBUTED),
        )
        .where(StakingRewardHistory.position_id.in_(position_ids))
        .group_by(StakingRewardHistory.position_id)
    )
    return {pid: (int(total), int(count)) for pid, total, count in result.all()}

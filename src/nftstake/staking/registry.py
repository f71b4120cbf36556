"""Contract registry: fixed duration tiers and reward arithmetic per collection."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from nftstake.db.models import StakingContract
from nftstake.staking.errors import (
    ContractInactiveError,
    ContractNotFoundError,
    UnsupportedDurationError,
)

SUPPORTED_BLOCKCHAINS = ("ethereum", "solana", "polygon", "base")
EVM_CHAINS = {"ethereum", "polygon", "base"}

# duration (months) -> column prefix on StakingContract
DURATION_TIERS: dict[int, str] = {
    6: "six_months",
    12: "twelve_months",
    36: "three_years",
}

_EVM_ADDRESS = re.compile(r"^0x[a-fA-F0-9]{40}$")
_SOLANA_ADDRESS = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")


@dataclass(frozen=True)
class RewardTier:
    duration: int
    tickets_per_month: int
    bonus_multiplier: float


DEFAULT_TIERS: dict[int, RewardTier] = {
    6: RewardTier(6, 5, 1.1),
    12: RewardTier(12, 12, 1.25),
    36: RewardTier(36, 30, 1.5),
}


def get_reward_structure(contract: StakingContract, duration: int) -> RewardTier:
    """Map a staking duration to the contract's tier.

    Raises:
        UnsupportedDurationError: duration is not 6, 12 or 36.
    """
    prefix = DURATION_TIERS.get(duration)
    if prefix is None:
        raise UnsupportedDurationError(duration)
    tickets = getattr(contract, f"{prefix}_tickets")
    multiplier = getattr(contract, f"{prefix}_multiplier")
    return RewardTier(
        duration=duration,
        tickets_per_month=0 if tickets is None else int(tickets),
        bonus_multiplier=1.0 if multiplier is None else float(multiplier),
    )


def ensure_distributable(contract: StakingContract) -> None:
    """Raise ContractInactiveError unless the contract is active and validated."""
    if not contract.is_active:
        raise ContractInactiveError(contract.id)
    if not contract.is_validated:
        raise ContractInactiveError(contract.id, "Staking contract is not validated")


def calculate_monthly_rewards(contract: StakingContract, duration: int, nft_count: int = 1) -> int:
    return get_reward_structure(contract, duration).tickets_per_month * nft_count


def calculate_projected_rewards(
    contract: StakingContract,
    duration: int,
    nft_count: int = 1,
) -> dict[str, Any]:
    """Project the tickets a stake earns over its full term."""
    tier = get_reward_structure(contract, duration)
    monthly_tickets = tier.tickets_per_month * nft_count
    total_tickets = monthly_tickets * duration
    effective_value = total_tickets * tier.bonus_multiplier
    return {
        "contract_id": contract.id,
        "contract_name": contract.contract_name,
        "duration": duration,
        "nft_count": nft_count,
        "monthly_tickets": monthly_tickets,
        "total_tickets": total_tickets,
        "bonus_multiplier": tier.bonus_multiplier,
        "effective_value": effective_value,
        "breakdown": {
            "base_reward": total_tickets,
            "bonus_reward": total_tickets * (tier.bonus_multiplier - 1),
            "total_reward": effective_value,
        },
    }


def validate_contract_address(address: str, blockchain: str) -> bool:
    """Check the address format for the given chain."""
    chain = blockchain.lower()
    if chain in EVM_CHAINS:
        return bool(_EVM_ADDRESS.match(address))
    if chain == "solana":
        return bool(_SOLANA_ADDRESS.match(address))
    return False


async def get_contract(db: AsyncSession, contract_id: int) -> StakingContract:
    """Load a contract or raise ContractNotFoundError."""
    contract = await db.get(StakingContract, contract_id)
    if contract is None:
        raise ContractNotFoundError(contract_id)
    return contract

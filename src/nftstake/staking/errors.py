"""Staking error taxonomy.

Per-position errors are captured by the distribution engine and reported in
the batch summary; the HTTP layer maps them to 4xx responses via ``status_code``.
"""

from __future__ import annotations


class StakingError(Exception):
    """Base class for all staking domain errors."""

    code = "staking_error"
    status_code = 400


class UnsupportedDurationError(StakingError):
    """Staking duration is not one of the fixed tiers (6, 12, 36 months)."""

    code = "unsupported_duration"
    status_code = 422

    def __init__(self, duration: int) -> None:
        self.duration = duration
        super().__init__(f"Invalid staking duration: {duration} months")


class InvalidAddressError(StakingError):
    code = "invalid_address"
    status_code = 422

    def __init__(self, address: str, blockchain: str) -> None:
        self.address = address
        self.blockchain = blockchain
        super().__init__(f"Invalid {blockchain} address: {address}")


class ContractInactiveError(StakingError):
    """Contract is deactivated or has not been validated by an admin."""

    code = "contract_inactive"
    status_code = 409

    def __init__(self, contract_id: int, reason: str = "Staking contract is not active") -> None:
        self.contract_id = contract_id
        super().__init__(f"{reason} (contract {contract_id})")


class TicketIssuanceError(StakingError):
    """Ticket service failed or timed out. Safe to retry on the next run."""

    code = "ticket_issuance_failed"
    status_code = 502


class NotificationTimeoutError(StakingError):
    """Reward notification did not complete in time. Never fails a commit."""

    code = "notification_timeout"
    status_code = 504


class PositionNotFoundError(StakingError):
    code = "position_not_found"
    status_code = 404

    def __init__(self, position_id: int) -> None:
        self.position_id = position_id
        super().__init__(f"Staking position {position_id} not found")


class ContractNotFoundError(StakingError):
    code = "contract_not_found"
    status_code = 404

    def __init__(self, contract_id: int) -> None:
        self.contract_id = contract_id
        super().__init__(f"Staking contract {contract_id} not found")


class PositionNotEligibleError(StakingError):
    """Position is unstaked, expired, or has nothing pending."""

    code = "position_not_eligible"
    status_code = 409


class PositionAlreadyDistributedError(StakingError):
    """Another run advanced ``last_reward_distribution`` first; commit rolled back."""

    code = "already_distributed"
    status_code = 409


class PositionNotVerifiedError(StakingError):
    code = "position_not_verified"
    status_code = 409


class NFTAlreadyStakedError(StakingError):
    code = "nft_already_staked"
    status_code = 409


class UnstakeNotAllowedError(StakingError):
    code = "unstake_not_allowed"
    status_code = 409


class DistributionInProgressError(StakingError):
    """A distribution run already holds the in-process guard or the lease."""

    code = "distribution_in_progress"
    status_code = 409

"""External collaborators of the distribution engine.

Ticket issuance and on-chain reads go over HTTP; reward notifications are
pushed to the user's WebSocket channel through Redis pub/sub.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import httpx

from nftstake.config import Settings
from nftstake.staking.errors import TicketIssuanceError

if TYPE_CHECKING:
    from redis.asyncio import Redis


@dataclass(frozen=True)
class OnChainPosition:
    """Staking position as reported by the chain."""

    owner: str
    nft_contract: str
    token_id: str
    is_active: bool
    duration_code: int
    staked_at: datetime | None = None
    unlock_at: datetime | None = None


@dataclass(frozen=True)
class RewardNotice:
    position_id: int
    contract_name: str
    nft_id: str
    open_entry_tickets: int
    bonus_multiplier: float
    effective_value: float
    distribution_type: str
    distributed_at: str


class TicketIssuer(ABC):
    """Mints free raffle entries for a user."""

    @abstractmethod
    async def mint_free_entries(self, user_id: int, count: int) -> list[str]:
        """Mint ``count`` free entries. Returns the issued ticket ids."""
        ...


class RewardNotifier(ABC):
    @abstractmethod
    async def send_reward_notification(self, user_id: int, notice: RewardNotice) -> None:
        ...


class BlockchainReader(ABC):
    @abstractmethod
    async def verify_position(self, blockchain: str, onchain_position_id: str) -> OnChainPosition | None:
        """Read a staking position from the chain. None if it does not exist."""
        ...


class HttpTicketIssuer(TicketIssuer):
    """Ticket service over HTTP: ``POST {base_url}/api/v1/tickets/free-entries``."""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.transport = transport

    async def mint_free_entries(self, user_id: int, count: int) -> list[str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{self.base_url}/api/v1/tickets/free-entries",
                    headers=headers,
                    json={"user_id": user_id, "count": count, "source": "staking"},
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise TicketIssuanceError(f"Ticket service request failed: {exc}") from exc

        payload = response.json()
        ticket_ids = [str(ticket_id) for ticket_id in payload.get("ticket_ids", [])]
        if len(ticket_ids) != count:
            raise TicketIssuanceError(f"Ticket service issued {len(ticket_ids)} of {count} entries")
        return ticket_ids


class HttpBlockchainReader(BlockchainReader):
    """Chain indexer over HTTP: ``GET {base_url}/positions/{chain}/{id}``."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def verify_position(self, blockchain: str, onchain_position_id: str) -> OnChainPosition | None:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.get(f"{self.base_url}/positions/{blockchain}/{onchain_position_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return _parse_onchain_position(response.json())


def _parse_onchain_position(data: dict[str, Any]) -> OnChainPosition:
    def _ts(value: Any) -> datetime | None:  # noqa: ANN401
        if not value:
            return None
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value, tz=timezone.utc)
        return datetime.fromisoformat(str(value))

    return OnChainPosition(
        owner=str(data["owner"]),
        nft_contract=str(data["nft_contract"]),
        token_id=str(data["token_id"]),
        is_active=bool(data["is_active"]),
        duration_code=int(data["duration"]),
        staked_at=_ts(data.get("staked_at")),
        unlock_at=_ts(data.get("unlock_at")),
    )


class RedisRewardNotifier(RewardNotifier):
    """Publish reward notices on ``ws:user:{user_id}`` for the WebSocket bridge."""

    def __init__(self, redis: Redis) -> None:
        self.redis = redis

    async def send_reward_notification(self, user_id: int, notice: RewardNotice) -> None:
        payload = {"event": "staking_reward", "data": asdict(notice)}
        await self.redis.publish(f"ws:user:{user_id}", json.dumps(payload))


def build_ticket_issuer(settings: Settings) -> TicketIssuer:
    return HttpTicketIssuer(
        settings.ticket_service_url,
        token=settings.ticket_service_token,
        timeout=settings.collaborator_timeout_seconds,
    )


def build_blockchain_reader(settings: Settings) -> BlockchainReader:
    return HttpBlockchainReader(settings.blockchain_reader_url, timeout=settings.collaborator_timeout_seconds)

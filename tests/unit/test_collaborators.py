"""Unit tests for the HTTP and Redis collaborators."""

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from nftstake.staking.collaborators import (
    HttpBlockchainReader,
    HttpTicketIssuer,
    RedisRewardNotifier,
    RewardNotice,
)
from nftstake.staking.errors import TicketIssuanceError


class TestHttpTicketIssuer:
    @pytest.mark.asyncio
    async def test_mints_entries(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"ticket_ids": ["a", "b", "c"]})

        issuer = HttpTicketIssuer("http://tickets/", token="secret", transport=httpx.MockTransport(handler))

        assert await issuer.mint_free_entries(4, 3) == ["a", "b", "c"]
        request = seen[0]
        assert request.url.path == "/api/v1/tickets/free-entries"
        assert request.headers["Authorization"] == "Bearer secret"
        assert json.loads(request.content) == {"user_id": 4, "count": 3, "source": "staking"}

    @pytest.mark.asyncio
    async def test_server_error(self):
        issuer = HttpTicketIssuer(
            "http://tickets", transport=httpx.MockTransport(lambda request: httpx.Response(503))
        )
        with pytest.raises(TicketIssuanceError):
            await issuer.mint_free_entries(4, 3)

    @pytest.mark.asyncio
    async def test_short_issue_is_a_failure(self):
        issuer = HttpTicketIssuer(
            "http://tickets",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"ticket_ids": ["a"]})),
        )
        with pytest.raises(TicketIssuanceError, match="1 of 3"):
            await issuer.mint_free_entries(4, 3)


class TestHttpBlockchainReader:
    @pytest.mark.asyncio
    async def test_parses_position(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/positions/ethereum/17"
            return httpx.Response(
                200,
                json={
                    "owner": "0xAB",
                    "nft_contract": "0xCD",
                    "token_id": 42,
                    "is_active": True,
                    "duration": 2,
                    "staked_at": 1767225600,
                    "unlock_at": "2029-01-01T00:00:00+00:00",
                },
            )

        reader = HttpBlockchainReader("http://indexer", transport=httpx.MockTransport(handler))
        position = await reader.verify_position("ethereum", "17")

        assert position.token_id == "42"
        assert position.duration_code == 2
        assert position.staked_at.year == 2026
        assert position.unlock_at.year == 2029

    @pytest.mark.asyncio
    async def test_missing_position(self):
        reader = HttpBlockchainReader(
            "http://indexer", transport=httpx.MockTransport(lambda request: httpx.Response(404))
        )
        assert await reader.verify_position("solana", "nope") is None


class TestRedisRewardNotifier:
    @pytest.mark.asyncio
    async def test_publishes_to_user_channel(self):
        redis = AsyncMock()
        notice = RewardNotice(
            position_id=1,
            contract_name="Cats",
            nft_id="ethereum:0xcd:42",
            open_entry_tickets=12,
            bonus_multiplier=1.25,
            effective_value=15.0,
            distribution_type="monthly",
            distributed_at="2026-03-15T12:00:00+00:00",
        )

        await RedisRewardNotifier(redis).send_reward_notification(9, notice)

        channel, message = redis.publish.await_args.args
        assert channel == "ws:user:9"
        payload = json.loads(message)
        assert payload["event"] == "staking_reward"
        assert payload["data"]["open_entry_tickets"] == 12

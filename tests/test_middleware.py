"""Middleware tests: request ID and error handling."""

import pytest
from httpx import AsyncClient

from conftest import ADMIN_HEADERS


@pytest.mark.asyncio
async def test_request_id_generated(client: AsyncClient) -> None:
    """Request ID is auto-generated when not provided."""
    response = await client.get("/health")
    assert "x-request-id" in response.headers
    assert len(response.headers["x-request-id"]) == 36  # UUID format


@pytest.mark.asyncio
async def test_request_id_preserved(client: AsyncClient) -> None:
    """Custom request ID is echoed back in response."""
    response = await client.get("/health", headers={"X-Request-Id": "test-abc-123"})
    assert response.headers["x-request-id"] == "test-abc-123"


@pytest.mark.asyncio
async def test_404_returns_json(client: AsyncClient) -> None:
    """Unknown paths return 404 with JSON body."""
    response = await client.get("/nonexistent-path")
    assert response.status_code == 404
    assert response.headers["content-type"] == "application/json"
    assert response.json()["detail"] == "Not Found"


@pytest.mark.asyncio
async def test_staking_error_carries_code(client: AsyncClient) -> None:
    """Domain errors map to their status code with a stable error code."""
    response = await client.get("/api/v1/staking/contracts/999/metrics")
    assert response.status_code == 404
    data = response.json()
    assert data["code"] == "contract_not_found"
    assert "999" in data["detail"]


@pytest.mark.asyncio
async def test_validation_error_shape(client: AsyncClient) -> None:
    """Request validation failures return 422 with a sanitized error list."""
    response = await client.post(
        "/api/v1/staking/distribute",
        json={"position_ids": "not-a-list"},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 422
    data = response.json()
    assert data["detail"] == "Validation error"
    assert data["errors"]
    assert set(data["errors"][0]) == {"loc", "msg", "type"}

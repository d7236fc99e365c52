"""Unit tests for health endpoints."""

import pytest
from httpx import AsyncClient

from catalog_mirror.api.v1 import health


@pytest.mark.asyncio
async def test_health_check(async_client: AsyncClient) -> None:
    """Test basic health check returns healthy status."""
    response = await async_client.get("/api/v1/health")
    assert response.status_code == 200

    data = response.json()
    assert data["status"] == "healthy"
    assert "version" in data
    assert "environment" in data
    assert "timestamp" in data
    assert "X-Response-Time-Ms" in response.headers


@pytest.mark.asyncio
async def test_liveness_check(async_client: AsyncClient) -> None:
    """Test liveness check returns alive status."""
    response = await async_client.get("/api/v1/health/live")
    assert response.status_code == 200
    assert response.json()["status"] == "alive"


@pytest.mark.asyncio
async def test_readiness_check(async_client: AsyncClient, monkeypatch: pytest.MonkeyPatch) -> None:
    """Database answers; Redis is reported but does not gate readiness."""

    async def no_redis():
        return None

    monkeypatch.setattr(health, "get_redis_client", no_redis)

    response = await async_client.get("/api/v1/health/ready")
    assert response.status_code == 200

    data = response.json()
    assert data["ready"] is True
    assert data["checks"] == {"postgres": True, "redis": False}

"""Unit tests for timing middleware."""

import pytest
import structlog
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from catalog_mirror.middleware.timing import TimingMiddleware


@pytest.fixture
def app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(TimingMiddleware)

    @app.get("/context")
    async def context() -> dict:
        return structlog.contextvars.get_contextvars()

    return app


@pytest.mark.asyncio
async def test_adds_response_time_header(app: FastAPI) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/context")

    assert response.status_code == 200
    assert float(response.headers["X-Response-Time-Ms"]) >= 0


@pytest.mark.asyncio
async def test_binds_organization_to_log_context(app: FastAPI) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        bound = await client.get("/context", headers={"X-Organization-Id": "org-acme"})
        cleared = await client.get("/context")

    assert bound.json() == {"organization_id": "org-acme"}
    assert cleared.json() == {}

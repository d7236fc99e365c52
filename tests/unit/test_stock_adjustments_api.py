"""Unit tests for the stock adjustment endpoints."""

import pytest
import pytest_asyncio
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_mirror.services.catalog_store import CatalogMirrorStore
from conftest import ORG_ID, make_product


@pytest_asyncio.fixture
async def product(session: AsyncSession, organizations: list[str]) -> None:
    await CatalogMirrorStore(session).upsert_products(ORG_ID, [make_product(1, stock_quantity=10)])
    await session.commit()


def payload(**overrides) -> dict:
    data = {
        "product_id": 1,
        "adjustment_type": "correcao",
        "quantity_before": 10,
        "quantity_adjusted": -3,
        "reason": "inventory count",
    }
    data.update(overrides)
    return data


@pytest.mark.asyncio
async def test_record_adjustment(async_client: AsyncClient, org_headers: dict, product) -> None:
    response = await async_client.post(
        "/api/v1/stock-adjustments", json=payload(), headers=org_headers
    )
    assert response.status_code == 201

    data = response.json()
    assert data["adjustment_type"] == "correcao"
    assert data["quantity_after"] == 7
    assert data["actor_id"] == "operator-7"
    assert data["organization_id"] == ORG_ID

    stock = await async_client.get("/api/v1/products/1/stock", headers=org_headers)
    assert stock.json()["stock_quantity"] == 7

    history = await async_client.get(
        "/api/v1/stock-adjustments", params={"product_id": 1}, headers=org_headers
    )
    assert [entry["id"] for entry in history.json()] == [data["id"]]


@pytest.mark.asyncio
async def test_stale_baseline_returns_conflict(
    async_client: AsyncClient, org_headers: dict, product
) -> None:
    response = await async_client.post(
        "/api/v1/stock-adjustments", json=payload(quantity_before=12), headers=org_headers
    )
    assert response.status_code == 409

    data = response.json()
    assert data["error"] == "stale_baseline"
    assert data["current_quantity"] == 10


@pytest.mark.asyncio
async def test_negative_stock_is_rejected(
    async_client: AsyncClient, org_headers: dict, product
) -> None:
    response = await async_client.post(
        "/api/v1/stock-adjustments",
        json=payload(adjustment_type="perda", quantity_adjusted=-11),
        headers=org_headers,
    )
    assert response.status_code == 422
    assert response.json()["error"] == "negative_stock_rejected"

    history = await async_client.get("/api/v1/stock-adjustments", headers=org_headers)
    assert history.json() == []


@pytest.mark.asyncio
async def test_unknown_target(async_client: AsyncClient, org_headers: dict, product) -> None:
    response = await async_client.post(
        "/api/v1/stock-adjustments", json=payload(product_id=99), headers=org_headers
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_invalid_type_is_a_validation_error(
    async_client: AsyncClient, org_headers: dict, product
) -> None:
    response = await async_client.post(
        "/api/v1/stock-adjustments", json=payload(adjustment_type="theft"), headers=org_headers
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_list_limit_is_bounded(async_client: AsyncClient, org_headers: dict, product) -> None:
    response = await async_client.get(
        "/api/v1/stock-adjustments", params={"limit": 0}, headers=org_headers
    )
    assert response.status_code == 422

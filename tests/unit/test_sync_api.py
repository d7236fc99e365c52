"""Unit tests for the sync job endpoints."""

import pytest
from httpx import AsyncClient

from catalog_mirror.api.v1 import sync as sync_api
from catalog_mirror.services.sync_controller import SyncJobController
from catalog_mirror.services.sync_status import SyncStatePublisher
from conftest import ORG_ID, OTHER_ORG_ID, FakeProvider, make_product, make_variation


@pytest.fixture
def fake_provider(monkeypatch: pytest.MonkeyPatch) -> FakeProvider:
    provider = FakeProvider(product_pages=[[make_product(1), make_product(2)]])
    monkeypatch.setattr(sync_api, "provider_for_organization", lambda organization: provider)
    return provider


@pytest.mark.asyncio
async def test_start_runs_job_in_background(
    async_client: AsyncClient, org_headers: dict, organizations, fake_provider: FakeProvider
) -> None:
    response = await async_client.post("/api/v1/sync/products", headers=org_headers)
    assert response.status_code == 202
    job_id = response.json()["job_id"]
    assert response.json()["status"] == "syncing"

    state = await async_client.get("/api/v1/sync/products", headers=org_headers)
    assert state.status_code == 200
    assert state.json()["job_id"] == job_id
    assert state.json()["status"] == "success"
    assert state.json()["report"]["items_upserted"] == 2
    assert fake_provider.closed is True

    product = await async_client.get("/api/v1/products/2", headers=org_headers)
    assert product.status_code == 200


@pytest.mark.asyncio
async def test_second_start_conflicts(
    async_client: AsyncClient,
    org_headers: dict,
    organizations,
    controller: SyncJobController,
    fake_provider: FakeProvider,
) -> None:
    running = controller.start(ORG_ID, "products")

    response = await async_client.post("/api/v1/sync/products", headers=org_headers)
    assert response.status_code == 409
    assert response.json()["error"] == "sync_already_running"
    assert response.json()["job_id"] == running.job_id
    assert fake_provider.closed is True


@pytest.mark.asyncio
async def test_cancel_and_restart(
    async_client: AsyncClient,
    org_headers: dict,
    organizations,
    controller: SyncJobController,
    fake_provider: FakeProvider,
) -> None:
    running = controller.start(ORG_ID, "products")

    response = await async_client.post(
        f"/api/v1/sync/jobs/{running.job_id}/cancel", headers=org_headers
    )
    assert response.status_code == 200
    assert response.json()["status"] == "error"
    assert response.json()["failure_reason"] == "cancelled"

    again = await async_client.post(
        f"/api/v1/sync/jobs/{running.job_id}/cancel", headers=org_headers
    )
    assert again.status_code == 409
    assert again.json()["error"] == "invalid_job_transition"

    restarted = await async_client.post("/api/v1/sync/products", headers=org_headers)
    assert restarted.status_code == 202


@pytest.mark.asyncio
async def test_cancel_is_tenant_scoped(
    async_client: AsyncClient, organizations, controller: SyncJobController
) -> None:
    running = controller.start(ORG_ID, "products")

    response = await async_client.post(
        f"/api/v1/sync/jobs/{running.job_id}/cancel",
        headers={"X-Organization-Id": OTHER_ORG_ID},
    )
    assert response.status_code == 404
    assert running.is_active


@pytest.mark.asyncio
async def test_unknown_sync_type(async_client: AsyncClient, org_headers: dict, organizations) -> None:
    response = await async_client.post("/api/v1/sync/orders", headers=org_headers)
    assert response.status_code == 400
    assert response.json()["error"] == "unknown_sync_type"


@pytest.mark.asyncio
async def test_provider_not_configured(async_client: AsyncClient, organizations) -> None:
    response = await async_client.post(
        "/api/v1/sync/products", headers={"X-Organization-Id": OTHER_ORG_ID}
    )
    assert response.status_code == 400
    assert response.json()["error"] == "provider_not_configured"


@pytest.mark.asyncio
async def test_state_before_any_sync(
    async_client: AsyncClient, org_headers: dict, organizations
) -> None:
    response = await async_client.get("/api/v1/sync/variations", headers=org_headers)
    assert response.status_code == 404
    assert response.json()["error"] == "job_not_found"


@pytest.mark.asyncio
async def test_claim_held_by_other_process_conflicts(
    async_client: AsyncClient,
    org_headers: dict,
    organizations,
    publisher: SyncStatePublisher,
    fake_provider: FakeProvider,
) -> None:
    worker = SyncJobController(publisher=publisher)
    held = await worker.acquire(ORG_ID, "products")

    response = await async_client.post("/api/v1/sync/products", headers=org_headers)
    assert response.status_code == 409
    assert response.json()["job_id"] == held.job_id
    assert fake_provider.closed is True

    state = await async_client.get("/api/v1/sync/products", headers=org_headers)
    assert state.json()["job_id"] == held.job_id


@pytest.mark.asyncio
async def test_incremental_start(
    async_client: AsyncClient, org_headers: dict, organizations, fake_provider: FakeProvider
) -> None:
    response = await async_client.post("/api/v1/sync/incremental", headers=org_headers)
    assert response.status_code == 202
    assert response.json()["sync_type"] == "incremental"

    state = await async_client.get("/api/v1/sync/incremental", headers=org_headers)
    assert state.json()["status"] == "success"
    assert fake_provider.modified_after_seen == [None]


@pytest.mark.asyncio
async def test_product_resync(
    async_client: AsyncClient, org_headers: dict, organizations, monkeypatch: pytest.MonkeyPatch
) -> None:
    provider = FakeProvider(
        product_pages=[[make_product(5, type="variable")]],
        variations={5: [[make_variation(51, 5)]]},
    )
    monkeypatch.setattr(sync_api, "provider_for_organization", lambda organization: provider)

    response = await async_client.post("/api/v1/sync/products/5", headers=org_headers)
    assert response.status_code == 202
    assert response.json()["sync_type"] == "product"
    assert response.json()["product_id"] == 5

    state = await async_client.get("/api/v1/sync/product", headers=org_headers)
    assert state.json()["status"] == "success"
    assert state.json()["report"]["items_upserted"] == 2
    assert provider.calls == [("product", 5), ("variations", 5, None)]


@pytest.mark.asyncio
async def test_product_type_needs_product_route(
    async_client: AsyncClient, org_headers: dict, organizations
) -> None:
    response = await async_client.post("/api/v1/sync/product", headers=org_headers)
    assert response.status_code == 400
    assert response.json()["error"] == "unknown_sync_type"

"""Pytest configuration and fixtures."""

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from catalog_mirror.exceptions import ProviderError
from catalog_mirror.infrastructure.database.connection import (
    get_session,
    get_session_factory_dependency,
    make_session_factory,
)
from catalog_mirror.infrastructure.database.models import SCHEMA, Base, Organization
from catalog_mirror.infrastructure.provider import ProviderPage
from catalog_mirror.infrastructure.redis import CacheService
from catalog_mirror.schemas import utcnow
from catalog_mirror.services.sync_controller import SyncJobController
from catalog_mirror.services.sync_status import SyncStatePublisher

ORG_ID = "org-acme"
OTHER_ORG_ID = "org-globex"


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine with the catalog schema mapped to the default one."""
    base = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'mirror.db'}")
    engine = base.execution_options(schema_translate_map={SCHEMA: None})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await base.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def organizations(session_factory: async_sessionmaker[AsyncSession]) -> list[str]:
    """Two tenants; only the first has WooCommerce credentials."""
    async with session_factory() as session:
        session.add_all(
            [
                Organization(
                    id=ORG_ID,
                    name="Acme",
                    settings={
                        "woocommerce": {
                            "url": "https://shop.acme.test",
                            "consumer_key": "ck_test",
                            "consumer_secret": "cs_test",
                        }
                    },
                ),
                Organization(id=OTHER_ORG_ID, name="Globex", settings={}),
            ]
        )
        await session.commit()
    return [ORG_ID, OTHER_ORG_ID]


@pytest.fixture
def snapshot_time() -> datetime:
    """External date_modified an hour in the past."""
    return utcnow() - timedelta(hours=1)


def make_product(product_id: int, organization_id: str = ORG_ID, **overrides: Any) -> dict:
    product = {
        "id": product_id,
        "organization_id": organization_id,
        "sku": f"SKU-{product_id}",
        "name": f"Product {product_id}",
        "type": "simple",
        "status": "publish",
        "price": "19.90",
        "regular_price": "19.90",
        "sale_price": "",
        "manage_stock": True,
        "stock_quantity": 10,
        "stock_status": "instock",
        "updated_at": utcnow() - timedelta(hours=1),
    }
    product.update(overrides)
    return product


def make_variation(
    variation_id: int, parent_id: int, organization_id: str = ORG_ID, **overrides: Any
) -> dict:
    variation = {
        "id": variation_id,
        "parent_id": parent_id,
        "organization_id": organization_id,
        "sku": f"SKU-{parent_id}-{variation_id}",
        "price": "9.90",
        "stock_quantity": 5,
        "stock_status": "instock",
        "attributes": [{"name": "Size", "option": "M"}],
        "updated_at": utcnow() - timedelta(hours=1),
    }
    variation.update(overrides)
    return variation


class FakeProvider:
    """In-memory catalog provider.

    ``product_pages`` is a list of item lists; ``variations`` maps a parent id
    to its list of pages. ``failures`` are raised, in order, before pages are
    served.
    """

    def __init__(
        self,
        product_pages: list[list[dict]] | None = None,
        variations: dict[int, list[list[dict]]] | None = None,
        failures: list[Exception] | None = None,
        total: int | None = None,
    ):
        self.product_pages = product_pages or [[]]
        self.variations = variations or {}
        self.failures = list(failures or [])
        self.total = total
        self.calls: list[tuple] = []
        self.modified_after_seen: list[datetime | None] = []
        self.on_fetch = None
        self.closed = False

    async def __aenter__(self) -> "FakeProvider":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        self.closed = True

    async def fetch_products_page(
        self, cursor: str | None, modified_after: datetime | None = None
    ) -> ProviderPage:
        self.calls.append(("products", cursor))
        self.modified_after_seen.append(modified_after)
        return await self._serve(self.product_pages, cursor, self.total)

    async def fetch_product(self, product_id: int) -> dict:
        self.calls.append(("product", product_id))
        if self.on_fetch is not None:
            self.on_fetch()
        if self.failures:
            raise self.failures.pop(0)
        for page in self.product_pages:
            for item in page:
                if item["id"] == product_id:
                    found = dict(item)
                    found.pop("organization_id", None)
                    return found
        raise ProviderError(f"Product {product_id} not found", status=404, retriable=False)

    async def fetch_variations_page(self, parent_id: int, cursor: str | None) -> ProviderPage:
        self.calls.append(("variations", parent_id, cursor))
        return await self._serve(self.variations.get(parent_id, [[]]), cursor, None)

    async def _serve(self, pages: list[list[dict]], cursor: str | None, total: int | None) -> ProviderPage:
        if self.on_fetch is not None:
            self.on_fetch()
        if self.failures:
            raise self.failures.pop(0)
        index = int(cursor) if cursor else 0
        next_cursor = str(index + 1) if index + 1 < len(pages) else None
        items = [dict(item) for item in pages[index]]
        for item in items:
            item.pop("organization_id", None)
        return ProviderPage(items=items, next_cursor=next_cursor, total=total)


@pytest.fixture
def publisher(session_factory: async_sessionmaker[AsyncSession]) -> SyncStatePublisher:
    return SyncStatePublisher(session_factory=session_factory, cache=CacheService(None))


@pytest.fixture
def controller(publisher: SyncStatePublisher) -> SyncJobController:
    return SyncJobController(publisher=publisher, max_attempts=3, backoff_seconds=0)


@pytest.fixture
def app(
    session_factory: async_sessionmaker[AsyncSession], controller: SyncJobController
) -> Any:
    """Create test application bound to the SQLite database."""
    from catalog_mirror.main import create_app

    async def override_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app = create_app(sync_controller=controller)
    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_session_factory_dependency] = lambda: session_factory
    return app


@pytest_asyncio.fixture
async def async_client(app: Any) -> AsyncGenerator[AsyncClient, None]:
    """Create asynchronous test client."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def org_headers() -> dict[str, str]:
    return {"X-Organization-Id": ORG_ID, "X-Actor-Id": "operator-7"}


class FakeRedis:
    """Just enough of redis.asyncio.Redis for CacheService."""

    def __init__(self):
        self.data: dict[str, bytes] = {}
        self.expiry: dict[str, int] = {}

    async def get(self, key: str) -> bytes | None:
        return self.data.get(key)

    async def set(self, key: str, value: bytes, ex: int | None = None) -> None:
        self.data[key] = value
        self.expiry[key] = ex

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)

    async def ping(self) -> bool:
        return True

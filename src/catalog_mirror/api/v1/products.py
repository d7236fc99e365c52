"""Mirrored catalog read endpoints."""

from datetime import timedelta

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_mirror.api.v1.deps import get_organization_id
from catalog_mirror.exceptions import TargetNotFound
from catalog_mirror.infrastructure.database.connection import get_session
from catalog_mirror.schemas import MirroredProduct, MirroredVariation, StockSnapshot
from catalog_mirror.services.catalog_store import CatalogMirrorStore

router = APIRouter()


@router.get("/{product_id}", response_model=MirroredProduct)
async def get_product(
    product_id: int,
    organization_id: str = Depends(get_organization_id),
    session: AsyncSession = Depends(get_session),
) -> MirroredProduct:
    product = await CatalogMirrorStore(session).get_product(organization_id, product_id)
    if product is None:
        raise TargetNotFound(f"Product {product_id} is not mirrored")
    return product


@router.get("/{product_id}/variations", response_model=list[MirroredVariation])
async def get_product_variations(
    product_id: int,
    organization_id: str = Depends(get_organization_id),
    session: AsyncSession = Depends(get_session),
) -> list[MirroredVariation]:
    """Variations of a product ordered by id; empty for simple products."""
    store = CatalogMirrorStore(session)
    if await store.get_product(organization_id, product_id) is None:
        raise TargetNotFound(f"Product {product_id} is not mirrored")
    return await store.get_variations(organization_id, product_id)


@router.get("/{product_id}/stock", response_model=StockSnapshot)
async def get_product_stock(
    product_id: int,
    variation_id: int | None = Query(None, description="Variation of the product"),
    max_staleness_seconds: int | None = Query(
        None, ge=0, description="Advise a refresh when the mirror is older than this"
    ),
    organization_id: str = Depends(get_organization_id),
    session: AsyncSession = Depends(get_session),
) -> StockSnapshot:
    """
    Current mirrored stock.

    ``refresh_advised`` is only a hint; the value returned is always the
    stored one.
    """
    max_staleness = (
        timedelta(seconds=max_staleness_seconds) if max_staleness_seconds is not None else None
    )
    snapshot = await CatalogMirrorStore(session).get_stock(
        organization_id, product_id, variation_id, max_staleness=max_staleness
    )
    if snapshot is None:
        target = f"Variation {variation_id} of product {product_id}" if variation_id else f"Product {product_id}"
        raise TargetNotFound(f"{target} is not mirrored")
    return snapshot

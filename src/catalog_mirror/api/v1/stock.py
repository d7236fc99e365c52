"""Stock adjustment ledger endpoints."""

from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_mirror.api.v1.deps import get_actor_id, get_organization_id
from catalog_mirror.infrastructure.database.connection import get_session
from catalog_mirror.infrastructure.database.models import AdjustmentType
from catalog_mirror.schemas import StockAdjustment, StockAdjustmentInput, to_naive_utc
from catalog_mirror.services.stock_ledger import StockAdjustmentLedger
from shared.constants import DEFAULT_ADJUSTMENT_LIMIT, MAX_ADJUSTMENT_LIMIT

router = APIRouter()


# =============================================================================
# Models
# =============================================================================


class StockAdjustmentRequest(BaseModel):
    """Request body for recording an adjustment; tenant and actor come from headers."""

    product_id: int = Field(..., description="Mirrored product id")
    variation_id: int | None = Field(None, description="Variation id for variable products")
    adjustment_type: AdjustmentType = Field(
        ..., description="perda, quebra, troca, devolucao or correcao (English names accepted)"
    )
    quantity_before: int = Field(..., description="Stock the operator saw before adjusting")
    quantity_adjusted: int = Field(..., description="Signed delta to apply")
    reason: str = Field(..., min_length=1)
    notes: str | None = None


# =============================================================================
# Endpoints
# =============================================================================


@router.post("", response_model=StockAdjustment, status_code=status.HTTP_201_CREATED)
async def record_stock_adjustment(
    request: StockAdjustmentRequest,
    organization_id: str = Depends(get_organization_id),
    actor_id: str | None = Depends(get_actor_id),
    session: AsyncSession = Depends(get_session),
) -> StockAdjustment:
    """
    Record a manual stock adjustment and apply it to the mirrored stock.

    **Errors:**
    - `409 stale_baseline`: `quantity_before` no longer matches; the body
      carries `current_quantity` so the caller can re-read and retry
    - `422 negative_stock_rejected`: the result would be below zero
    - `404 not_found`: product or variation is not mirrored
    """
    data = StockAdjustmentInput(
        organization_id=organization_id,
        actor_id=actor_id,
        **request.model_dump(),
    )
    return await StockAdjustmentLedger(session).record_adjustment(data)


@router.get("", response_model=list[StockAdjustment])
async def list_stock_adjustments(
    product_id: int | None = Query(None),
    variation_id: int | None = Query(None),
    date_from: datetime | None = Query(None, description="Inclusive lower bound on created_at"),
    date_to: datetime | None = Query(None, description="Inclusive upper bound on created_at"),
    limit: int = Query(DEFAULT_ADJUSTMENT_LIMIT, ge=1, le=MAX_ADJUSTMENT_LIMIT),
    organization_id: str = Depends(get_organization_id),
    session: AsyncSession = Depends(get_session),
) -> list[StockAdjustment]:
    """Adjustment history, most recent first."""
    return await StockAdjustmentLedger(session).list_adjustments(
        organization_id,
        product_id=product_id,
        variation_id=variation_id,
        date_from=to_naive_utc(date_from),
        date_to=to_naive_utc(date_to),
        limit=limit,
    )

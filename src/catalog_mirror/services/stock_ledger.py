"""Stock adjustment ledger.

Append-only record of manual stock deltas. Recording an adjustment and
writing the new stock happen in one transaction, guarded by a
compare-and-set on the stock row's version.
"""

from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any
from uuid import uuid4

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_mirror.exceptions import (
    InvalidScope,
    NegativeStockRejected,
    StaleBaseline,
    TargetNotFound,
)
from catalog_mirror.infrastructure.database.models import StockAdjustmentRecord
from catalog_mirror.schemas import StockAdjustment, StockAdjustmentInput, utcnow
from catalog_mirror.services.catalog_store import CatalogMirrorStore, derive_stock_status

logger = structlog.get_logger()


class StockAdjustmentLedger:
    """Records and lists stock adjustments for one database session."""

    def __init__(
        self,
        session: AsyncSession,
        store: CatalogMirrorStore | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.store = store or CatalogMirrorStore(session, clock=clock)
        self.clock = clock

    async def record_adjustment(
        self, data: StockAdjustmentInput | Mapping[str, Any]
    ) -> StockAdjustment:
        """
        Append an adjustment and apply it to the mirrored stock.

        Validation order:
            1. the organization must exist (InvalidScope)
            2. quantity_before must equal the stored stock (StaleBaseline)
            3. the resulting stock must not be negative (NegativeStockRejected)

        Raises:
            InvalidScope, TargetNotFound, StaleBaseline, NegativeStockRejected
        """
        if not isinstance(data, StockAdjustmentInput):
            data = StockAdjustmentInput.model_validate(data)

        log = logger.bind(
            organization_id=data.organization_id,
            product_id=data.product_id,
            variation_id=data.variation_id,
        )

        try:
            if not await self.store.organization_exists(data.organization_id):
                raise InvalidScope(f"Unknown organization {data.organization_id!r}")

            snapshot = await self.store.get_stock(
                data.organization_id, data.product_id, data.variation_id
            )
            if snapshot is None:
                raise TargetNotFound(self._target_label(data) + " is not mirrored")

            current = snapshot.stock_quantity or 0
            if data.quantity_before != current:
                raise StaleBaseline(
                    f"quantity_before {data.quantity_before} does not match "
                    f"current stock {current}",
                    current_quantity=current,
                )

            quantity_after = data.quantity_before + data.quantity_adjusted
            if quantity_after < 0:
                raise NegativeStockRejected(
                    f"Adjustment of {data.quantity_adjusted} would leave "
                    f"{self._target_label(data)} at {quantity_after}"
                )

            swapped = await self.store.compare_and_set_stock(
                data.organization_id,
                data.product_id,
                data.variation_id,
                expected_version=snapshot.version,
                quantity=quantity_after,
                status=derive_stock_status(quantity_after, snapshot.stock_status),
            )
            if not swapped:
                raise StaleBaseline("Stock changed while the adjustment was being recorded")

            record = StockAdjustmentRecord(
                id=str(uuid4()),
                organization_id=data.organization_id,
                product_id=data.product_id,
                variation_id=data.variation_id,
                adjustment_type=data.adjustment_type,
                quantity_before=data.quantity_before,
                quantity_after=quantity_after,
                quantity_adjusted=data.quantity_adjusted,
                reason=data.reason,
                notes=data.notes,
                actor_id=data.actor_id,
                created_at=self.clock(),
            )
            self.session.add(record)
            await self.session.commit()

        except StaleBaseline as e:
            await self.session.rollback()
            log.info("Stale adjustment baseline", quantity_before=data.quantity_before)
            if e.current_quantity is None:
                raise await self._refresh_stale(data, e) from e
            raise
        except Exception as e:
            await self.session.rollback()
            log.info("Adjustment rejected", error=str(e), error_type=type(e).__name__)
            raise

        log.info(
            "Stock adjustment recorded",
            adjustment_id=record.id,
            adjustment_type=record.adjustment_type.value,
            quantity_before=record.quantity_before,
            quantity_after=record.quantity_after,
            actor_id=record.actor_id,
        )
        return StockAdjustment.model_validate(record)

    async def list_adjustments(
        self,
        organization_id: str,
        product_id: int | None = None,
        variation_id: int | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        limit: int | None = None,
    ) -> list[StockAdjustment]:
        """List adjustments, most recent first. ``date_to`` is inclusive."""
        if not organization_id:
            raise InvalidScope("organization_id is required")

        stmt = select(StockAdjustmentRecord).where(
            StockAdjustmentRecord.organization_id == organization_id
        )
        if product_id is not None:
            stmt = stmt.where(StockAdjustmentRecord.product_id == product_id)
        if variation_id is not None:
            stmt = stmt.where(StockAdjustmentRecord.variation_id == variation_id)
        if date_from is not None:
            stmt = stmt.where(StockAdjustmentRecord.created_at >= date_from)
        if date_to is not None:
            stmt = stmt.where(StockAdjustmentRecord.created_at <= date_to)
        stmt = stmt.order_by(
            StockAdjustmentRecord.created_at.desc(), StockAdjustmentRecord.id.desc()
        )
        if limit is not None:
            stmt = stmt.limit(limit)

        result = await self.session.execute(stmt)
        return [StockAdjustment.model_validate(row) for row in result.scalars()]

    async def entries_between(
        self,
        organization_id: str,
        product_id: int,
        variation_id: int | None,
        after: datetime,
        until: datetime,
    ) -> list[StockAdjustment]:
        """Entries for one target with ``after < created_at <= until``, oldest first."""
        stmt = select(StockAdjustmentRecord).where(
            StockAdjustmentRecord.organization_id == organization_id,
            StockAdjustmentRecord.product_id == product_id,
            StockAdjustmentRecord.created_at > after,
            StockAdjustmentRecord.created_at <= until,
        )
        if variation_id is None:
            stmt = stmt.where(StockAdjustmentRecord.variation_id.is_(None))
        else:
            stmt = stmt.where(StockAdjustmentRecord.variation_id == variation_id)
        stmt = stmt.order_by(
            StockAdjustmentRecord.created_at.asc(), StockAdjustmentRecord.id.asc()
        )

        result = await self.session.execute(stmt)
        return [StockAdjustment.model_validate(row) for row in result.scalars()]

    async def _refresh_stale(
        self, data: StockAdjustmentInput, error: StaleBaseline
    ) -> StaleBaseline:
        snapshot = await self.store.get_stock(
            data.organization_id, data.product_id, data.variation_id
        )
        current = (snapshot.stock_quantity or 0) if snapshot is not None else None
        return StaleBaseline(error.message, current_quantity=current)

    @staticmethod
    def _target_label(data: StockAdjustmentInput) -> str:
        if data.variation_id is not None:
            return f"product {data.product_id} variation {data.variation_id}"
        return f"product {data.product_id}"

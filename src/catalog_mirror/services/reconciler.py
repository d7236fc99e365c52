"""Stock reconciliation after an external sync.

External stock does not yet include manual corrections recorded locally
after the external snapshot was taken. Those ledger entries are replayed on
top of the external value to get the authoritative stock.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from catalog_mirror.schemas import (
    MirroredProduct,
    MirroredVariation,
    ReconciliationConflict,
)
from catalog_mirror.services.catalog_store import CatalogMirrorStore, derive_stock_status
from catalog_mirror.services.stock_ledger import StockAdjustmentLedger

logger = structlog.get_logger()


@dataclass(frozen=True)
class ReconcileTarget:
    """A product or variation whose stock was just reported by the provider."""

    product_id: int
    variation_id: int | None
    external_quantity: int
    external_snapshot_at: datetime | None
    stock_status: str | None = None

    @classmethod
    def from_record(
        cls, record: MirroredProduct | MirroredVariation
    ) -> "ReconcileTarget | None":
        """Build a target from an upserted record; None if stock is unmanaged."""
        if record.stock_quantity is None:
            return None
        if isinstance(record, MirroredVariation):
            product_id, variation_id = record.parent_id, record.id
        else:
            product_id, variation_id = record.id, None
        return cls(
            product_id=product_id,
            variation_id=variation_id,
            external_quantity=record.stock_quantity,
            external_snapshot_at=record.updated_at,
            stock_status=record.stock_status,
        )

    @property
    def key(self) -> tuple[int, int | None]:
        return (self.product_id, self.variation_id)


@dataclass
class ReconciliationResult:
    reconciled: int = 0
    unchanged: int = 0
    conflicts: list[ReconciliationConflict] = field(default_factory=list)


class StockReconciler:
    """Merges pending ledger entries into externally reported stock."""

    def __init__(self, store: CatalogMirrorStore, ledger: StockAdjustmentLedger):
        self.store = store
        self.ledger = ledger

    async def reconcile(
        self,
        organization_id: str,
        targets: Iterable[ReconcileTarget],
        sync_started_at: datetime,
        fallback_snapshot_at: datetime | None = None,
    ) -> ReconciliationResult:
        """
        Replay ledger entries in ``(snapshot, sync_started_at]`` per target.

        The snapshot time is the record's external ``updated_at``, falling
        back to ``fallback_snapshot_at`` (the last successful sync). Targets
        with neither keep the external value. A running total that would go
        negative is clamped to zero and reported as a conflict; the sync
        carries on.
        """
        result = ReconciliationResult()
        latest = {target.key: target for target in targets}

        for target in latest.values():
            snapshot_at = target.external_snapshot_at or fallback_snapshot_at
            if snapshot_at is None or snapshot_at >= sync_started_at:
                result.unchanged += 1
                continue

            entries = await self.ledger.entries_between(
                organization_id,
                target.product_id,
                target.variation_id,
                after=snapshot_at,
                until=sync_started_at,
            )
            if not entries:
                result.unchanged += 1
                continue

            running = target.external_quantity
            conflict = False
            for entry in entries:
                running += entry.quantity_adjusted
                if running < 0:
                    running = 0
                    conflict = True

            await self.store.set_stock(
                organization_id,
                target.product_id,
                target.variation_id,
                quantity=running,
                status=derive_stock_status(running, target.stock_status),
                reconciliation_conflict=conflict,
            )
            result.reconciled += 1

            if conflict:
                result.conflicts.append(
                    ReconciliationConflict(
                        product_id=target.product_id,
                        variation_id=target.variation_id,
                        external_quantity=target.external_quantity,
                        resolved_quantity=running,
                    )
                )
                logger.warning(
                    "Reconciliation conflict, stock clamped to zero",
                    organization_id=organization_id,
                    product_id=target.product_id,
                    variation_id=target.variation_id,
                    external_quantity=target.external_quantity,
                    entries=len(entries),
                )

        logger.info(
            "Stock reconciled",
            organization_id=organization_id,
            reconciled=result.reconciled,
            unchanged=result.unchanged,
            conflicts=len(result.conflicts),
        )
        return result

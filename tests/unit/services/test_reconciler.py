"""Unit tests for post-sync stock reconciliation."""

from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_mirror.schemas import MirroredProduct, MirroredVariation, utcnow
from catalog_mirror.services.catalog_store import CatalogMirrorStore
from catalog_mirror.services.reconciler import ReconcileTarget, StockReconciler
from catalog_mirror.services.stock_ledger import StockAdjustmentLedger
from conftest import ORG_ID, make_product, make_variation


def adjustment(product_id: int, before: int, delta: int, variation_id: int | None = None) -> dict:
    return {
        "organization_id": ORG_ID,
        "product_id": product_id,
        "variation_id": variation_id,
        "adjustment_type": "perda",
        "quantity_before": before,
        "quantity_adjusted": delta,
        "reason": "damaged in storage",
    }


def reconciler_for(session: AsyncSession) -> StockReconciler:
    store = CatalogMirrorStore(session)
    return StockReconciler(store, StockAdjustmentLedger(session, store=store))


class TestReconcileTarget:
    def test_from_product(self) -> None:
        record = MirroredProduct.model_validate(make_product(1, stock_quantity=20))
        target = ReconcileTarget.from_record(record)
        assert target.key == (1, None)
        assert target.external_quantity == 20

    def test_from_variation(self) -> None:
        record = MirroredVariation.model_validate(make_variation(11, 10, stock_quantity=3))
        target = ReconcileTarget.from_record(record)
        assert target.key == (10, 11)

    def test_unmanaged_stock_is_not_a_target(self) -> None:
        record = MirroredProduct.model_validate(make_product(1, stock_quantity=None))
        assert ReconcileTarget.from_record(record) is None


class TestStockReconciler:
    @pytest.mark.asyncio
    async def test_pending_adjustment_is_reapplied(
        self, session: AsyncSession, organizations: list[str], snapshot_time
    ) -> None:
        """External 20 taken before a -5 adjustment reconciles to 15."""
        store = CatalogMirrorStore(session)
        await store.upsert_products(
            ORG_ID, [make_product(1, stock_quantity=20, updated_at=snapshot_time)]
        )
        await session.commit()
        await StockAdjustmentLedger(session).record_adjustment(adjustment(1, 20, -5))

        sync_started_at = utcnow()
        result = await store.upsert_products(
            ORG_ID, [make_product(1, stock_quantity=20, updated_at=snapshot_time)]
        )
        assert (await store.get_stock(ORG_ID, 1)).stock_quantity == 20

        outcome = await reconciler_for(session).reconcile(
            ORG_ID,
            [ReconcileTarget.from_record(r) for r in result.applied],
            sync_started_at=sync_started_at,
        )
        await session.commit()

        assert outcome.reconciled == 1
        assert outcome.conflicts == []
        snapshot = await store.get_stock(ORG_ID, 1)
        assert snapshot.stock_quantity == 15
        assert snapshot.stock_status == "instock"

    @pytest.mark.asyncio
    async def test_adjustment_already_in_snapshot_is_not_replayed(
        self, session: AsyncSession, organizations: list[str], snapshot_time
    ) -> None:
        store = CatalogMirrorStore(session)
        await store.upsert_products(
            ORG_ID,
            [make_product(1, stock_quantity=20, updated_at=snapshot_time - timedelta(hours=1))],
        )
        await session.commit()
        ledger = StockAdjustmentLedger(session, clock=lambda: snapshot_time - timedelta(minutes=30))
        await ledger.record_adjustment(adjustment(1, 20, -5))

        target = ReconcileTarget(
            product_id=1,
            variation_id=None,
            external_quantity=15,
            external_snapshot_at=snapshot_time,
            stock_status="instock",
        )
        outcome = await reconciler_for(session).reconcile(
            ORG_ID, [target], sync_started_at=utcnow()
        )

        assert outcome.reconciled == 0
        assert outcome.unchanged == 1

    @pytest.mark.asyncio
    async def test_adjustments_after_sync_start_are_excluded(
        self, session: AsyncSession, organizations: list[str], snapshot_time
    ) -> None:
        store = CatalogMirrorStore(session)
        await store.upsert_products(
            ORG_ID, [make_product(1, stock_quantity=20, updated_at=snapshot_time)]
        )
        await session.commit()
        sync_started_at = utcnow()
        ledger = StockAdjustmentLedger(session, clock=lambda: sync_started_at + timedelta(seconds=1))
        await ledger.record_adjustment(adjustment(1, 20, -5))

        target = ReconcileTarget(1, None, 20, snapshot_time, "instock")
        outcome = await reconciler_for(session).reconcile(
            ORG_ID, [target], sync_started_at=sync_started_at
        )

        assert outcome.unchanged == 1

    @pytest.mark.asyncio
    async def test_negative_total_is_clamped_and_flagged(
        self, session: AsyncSession, organizations: list[str], snapshot_time
    ) -> None:
        store = CatalogMirrorStore(session)
        await store.upsert_products(
            ORG_ID, [make_product(1, stock_quantity=6, updated_at=snapshot_time)]
        )
        await session.commit()
        await StockAdjustmentLedger(session).record_adjustment(adjustment(1, 6, -5))

        # External side sold 4 meanwhile and reports 2
        target = ReconcileTarget(1, None, 2, snapshot_time, "instock")
        outcome = await reconciler_for(session).reconcile(
            ORG_ID, [target], sync_started_at=utcnow()
        )
        await session.commit()

        assert outcome.reconciled == 1
        [conflict] = outcome.conflicts
        assert conflict.product_id == 1
        assert conflict.external_quantity == 2
        assert conflict.resolved_quantity == 0

        snapshot = await store.get_stock(ORG_ID, 1)
        assert snapshot.stock_quantity == 0
        assert snapshot.stock_status == "outofstock"
        product = await store.get_product(ORG_ID, 1)
        assert product.reconciliation_conflict is True

    @pytest.mark.asyncio
    async def test_fallback_snapshot_time(
        self, session: AsyncSession, organizations: list[str], snapshot_time
    ) -> None:
        store = CatalogMirrorStore(session)
        await store.upsert_products(
            ORG_ID, [make_product(1, stock_quantity=20, updated_at=None)]
        )
        await session.commit()
        await StockAdjustmentLedger(session).record_adjustment(adjustment(1, 20, -5))

        target = ReconcileTarget(1, None, 20, None, "instock")
        reconciler = reconciler_for(session)

        without = await reconciler.reconcile(ORG_ID, [target], sync_started_at=utcnow())
        assert without.unchanged == 1

        with_fallback = await reconciler.reconcile(
            ORG_ID, [target], sync_started_at=utcnow(), fallback_snapshot_at=snapshot_time
        )
        await session.commit()
        assert with_fallback.reconciled == 1
        assert (await store.get_stock(ORG_ID, 1)).stock_quantity == 15

    @pytest.mark.asyncio
    async def test_variation_targets(
        self, session: AsyncSession, organizations: list[str], snapshot_time
    ) -> None:
        store = CatalogMirrorStore(session)
        await store.upsert_products(ORG_ID, [make_product(10, type="variable", stock_quantity=None)])
        await store.upsert_variations(
            ORG_ID, [make_variation(11, 10, stock_quantity=8, updated_at=snapshot_time)]
        )
        await session.commit()
        await StockAdjustmentLedger(session).record_adjustment(
            adjustment(10, 8, -2, variation_id=11)
        )

        target = ReconcileTarget(10, 11, 8, snapshot_time, "instock")
        await reconciler_for(session).reconcile(ORG_ID, [target], sync_started_at=utcnow())
        await session.commit()

        assert (await store.get_stock(ORG_ID, 10, 11)).stock_quantity == 6

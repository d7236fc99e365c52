"""Catalog mirror store.

Tenant-scoped cache of products, variations and stock pulled from the
external catalog. Every query filters on organization_id.
"""

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from pydantic import ValidationError
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_mirror.config import get_settings
from catalog_mirror.exceptions import InvalidScope, TargetNotFound
from catalog_mirror.infrastructure.database.models import (
    Organization,
    Product,
    ProductVariation,
)
from catalog_mirror.schemas import (
    MirroredProduct,
    MirroredVariation,
    RecordFailure,
    StockSnapshot,
    utcnow,
)
from shared.constants import (
    STOCK_STATUS_IN_STOCK,
    STOCK_STATUS_ON_BACKORDER,
    STOCK_STATUS_OUT_OF_STOCK,
    VARIABLE_PRODUCT_TYPE,
)

logger = structlog.get_logger()

_PRODUCT_FIELDS = (
    "sku",
    "name",
    "type",
    "status",
    "price",
    "regular_price",
    "sale_price",
    "on_sale",
    "manage_stock",
    "stock_quantity",
    "stock_status",
    "updated_at",
)
_VARIATION_FIELDS = (
    "parent_id",
    "sku",
    "price",
    "regular_price",
    "sale_price",
    "stock_quantity",
    "stock_status",
    "updated_at",
)


def derive_stock_status(quantity: int | None, current: str | None = None) -> str | None:
    """Stock status implied by a quantity. Backorder status survives zero stock."""
    if quantity is None:
        return current
    if quantity > 0:
        return STOCK_STATUS_IN_STOCK
    if current == STOCK_STATUS_ON_BACKORDER:
        return current
    return STOCK_STATUS_OUT_OF_STOCK


def parse_attributes(raw: Any) -> tuple[list[dict[str, str]], list[str]]:
    """Normalise free-form attribute entries into ordered (name, option) pairs.

    Accepts WooCommerce dicts ({"name": ..., "option": ...}) and 2-item
    sequences. Anything else is skipped and described in the returned
    warnings.
    """
    if raw is None:
        return [], []
    if not isinstance(raw, (list, tuple)):
        return [], [f"attributes is not a list ({type(raw).__name__})"]

    parsed: list[dict[str, str]] = []
    warnings: list[str] = []
    for position, entry in enumerate(raw):
        name: Any = None
        option: Any = None
        if isinstance(entry, Mapping):
            name, option = entry.get("name"), entry.get("option")
        elif isinstance(entry, (list, tuple)) and len(entry) == 2:
            name, option = entry
        if (
            not isinstance(name, str)
            or not name.strip()
            or option is None
            or isinstance(option, (Mapping, list, tuple))
        ):
            warnings.append(f"attribute #{position} skipped: {entry!r}")
            continue
        parsed.append({"name": name.strip(), "option": str(option)})
    return parsed, warnings


def _raw_value(raw: Any, key: str) -> Any:
    if isinstance(raw, Mapping):
        return raw.get(key)
    return getattr(raw, key, None)


def _raw_int(raw: Any, key: str) -> int | None:
    value = _raw_value(raw, key)
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _describe(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'record'}: {err['msg']}"
        for err in error.errors()
    )


@dataclass
class UpsertResult:
    """Outcome of one upsert batch."""

    applied: list[MirroredProduct | MirroredVariation] = field(default_factory=list)
    stale: list[int] = field(default_factory=list)
    failures: list[RecordFailure] = field(default_factory=list)
    attribute_warnings: list[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.applied)


class CatalogMirrorStore:
    """Reads and writes the mirrored catalog for one database session."""

    def __init__(
        self,
        session: AsyncSession,
        default_max_staleness: timedelta | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.clock = clock
        if default_max_staleness is None:
            default_max_staleness = timedelta(
                seconds=get_settings().stock_max_staleness_seconds
            )
        self.default_max_staleness = default_max_staleness

    # -------------------------------------------------------------------------
    # Organizations
    # -------------------------------------------------------------------------

    async def get_organization(self, organization_id: str) -> Organization | None:
        if not organization_id:
            return None
        return await self.session.get(Organization, organization_id)

    async def organization_exists(self, organization_id: str) -> bool:
        if not organization_id:
            return False
        result = await self.session.execute(
            select(Organization.id).where(Organization.id == organization_id)
        )
        return result.scalar_one_or_none() is not None

    async def list_organizations(self) -> list[Organization]:
        result = await self.session.execute(select(Organization).order_by(Organization.id))
        return list(result.scalars())

    # -------------------------------------------------------------------------
    # Upserts
    # -------------------------------------------------------------------------

    async def upsert_products(
        self, organization_id: str, page: Iterable[Any]
    ) -> UpsertResult:
        """Upsert a page of products keyed by (organization_id, id).

        Last write wins on ``updated_at``: a record strictly older than the
        stored row is skipped as stale. Invalid records are reported and
        skipped without aborting the batch.
        """
        self._require_scope(organization_id)
        result = UpsertResult()
        pending: dict[int, Product] = {}
        now = self.clock()

        for raw in page:
            record = self._validate(MirroredProduct, raw, organization_id, result)
            if record is None:
                continue

            existing = pending.get(record.id) or await self.session.get(
                Product, (organization_id, record.id), populate_existing=True
            )
            values = {name: getattr(record, name) for name in _PRODUCT_FIELDS}

            if existing is None:
                row = Product(
                    organization_id=organization_id,
                    id=record.id,
                    synced_at=now,
                    version=1,
                    reconciliation_conflict=False,
                    **values,
                )
                self.session.add(row)
                pending[record.id] = row
            elif self._is_stale(existing.updated_at, record.updated_at):
                result.stale.append(record.id)
                continue
            else:
                self._apply(existing, values, now)
                pending[record.id] = existing

            result.applied.append(record)

        await self.session.flush()
        logger.debug(
            "Upserted products",
            organization_id=organization_id,
            applied=result.count,
            stale=len(result.stale),
            failed=len(result.failures),
        )
        return result

    async def upsert_variations(
        self, organization_id: str, page: Iterable[Any]
    ) -> UpsertResult:
        """Upsert a page of variations.

        Same semantics as :meth:`upsert_products`; in addition a variation
        whose parent product is not mirrored for the organization is
        rejected individually.
        """
        self._require_scope(organization_id)
        result = UpsertResult()
        pending: dict[int, ProductVariation] = {}
        known_parents: dict[int, bool] = {}
        now = self.clock()

        for raw in page:
            prepared = raw
            raw_attributes = _raw_value(raw, "attributes")
            if isinstance(raw, Mapping) and raw_attributes is not None:
                attributes, warnings = parse_attributes(raw_attributes)
                prepared = {**raw, "attributes": attributes}
                record_id = _raw_int(raw, "id")
                result.attribute_warnings.extend(
                    f"variation {record_id}: {warning}" for warning in warnings
                )

            record = self._validate(MirroredVariation, prepared, organization_id, result)
            if record is None:
                continue

            if record.parent_id not in known_parents:
                known_parents[record.parent_id] = await self._product_exists(
                    organization_id, record.parent_id
                )
            if not known_parents[record.parent_id]:
                self._reject(
                    result,
                    organization_id,
                    RecordFailure(
                        record_id=record.id,
                        parent_id=record.parent_id,
                        reason=f"parent product {record.parent_id} is not mirrored",
                    ),
                )
                continue

            existing = pending.get(record.id) or await self.session.get(
                ProductVariation, (organization_id, record.id), populate_existing=True
            )
            values = {name: getattr(record, name) for name in _VARIATION_FIELDS}
            values["attributes"] = [attr.model_dump() for attr in record.attributes]

            if existing is None:
                row = ProductVariation(
                    organization_id=organization_id,
                    id=record.id,
                    synced_at=now,
                    version=1,
                    reconciliation_conflict=False,
                    **values,
                )
                self.session.add(row)
                pending[record.id] = row
            elif self._is_stale(existing.updated_at, record.updated_at):
                result.stale.append(record.id)
                continue
            else:
                self._apply(existing, values, now)
                pending[record.id] = existing

            result.applied.append(record)

        await self.session.flush()
        logger.debug(
            "Upserted variations",
            organization_id=organization_id,
            applied=result.count,
            stale=len(result.stale),
            failed=len(result.failures),
            attribute_warnings=len(result.attribute_warnings),
        )
        return result

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_product(
        self, organization_id: str, product_id: int
    ) -> MirroredProduct | None:
        self._require_scope(organization_id)
        result = await self.session.execute(
            select(Product)
            .where(Product.organization_id == organization_id, Product.id == product_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return MirroredProduct.model_validate(row) if row is not None else None

    async def get_variations(
        self, organization_id: str, parent_id: int
    ) -> list[MirroredVariation]:
        self._require_scope(organization_id)
        result = await self.session.execute(
            select(ProductVariation)
            .where(
                ProductVariation.organization_id == organization_id,
                ProductVariation.parent_id == parent_id,
            )
            .order_by(ProductVariation.id.asc())
            .execution_options(populate_existing=True)
        )
        return [MirroredVariation.model_validate(row) for row in result.scalars()]

    async def get_stock(
        self,
        organization_id: str,
        product_id: int,
        variation_id: int | None = None,
        max_staleness: timedelta | None = None,
    ) -> StockSnapshot | None:
        """Current stock of a product, or of one of its variations.

        ``refresh_advised`` is set when the record was last refreshed longer
        ago than ``max_staleness``. It is advisory only.
        """
        self._require_scope(organization_id)
        if variation_id is None:
            stmt = select(
                Product.stock_quantity,
                Product.stock_status,
                Product.version,
                Product.synced_at,
            ).where(Product.organization_id == organization_id, Product.id == product_id)
        else:
            stmt = select(
                ProductVariation.stock_quantity,
                ProductVariation.stock_status,
                ProductVariation.version,
                ProductVariation.synced_at,
            ).where(
                ProductVariation.organization_id == organization_id,
                ProductVariation.id == variation_id,
                ProductVariation.parent_id == product_id,
            )

        row = (await self.session.execute(stmt)).one_or_none()
        if row is None:
            return None

        threshold = max_staleness if max_staleness is not None else self.default_max_staleness
        refresh_advised = row.synced_at is None or self.clock() - row.synced_at > threshold
        return StockSnapshot(
            product_id=product_id,
            variation_id=variation_id,
            stock_quantity=row.stock_quantity,
            stock_status=row.stock_status,
            version=row.version,
            synced_at=row.synced_at,
            refresh_advised=refresh_advised,
        )

    async def list_variable_product_ids(self, organization_id: str) -> list[int]:
        self._require_scope(organization_id)
        result = await self.session.execute(
            select(Product.id)
            .where(
                Product.organization_id == organization_id,
                Product.type == VARIABLE_PRODUCT_TYPE,
            )
            .order_by(Product.id.asc())
        )
        return list(result.scalars())

    async def latest_product_update(self, organization_id: str) -> datetime | None:
        """Newest external ``updated_at`` among mirrored products; the incremental sync cursor."""
        self._require_scope(organization_id)
        result = await self.session.execute(
            select(func.max(Product.updated_at)).where(Product.organization_id == organization_id)
        )
        return result.scalar_one_or_none()

    # -------------------------------------------------------------------------
    # Stock writes
    # -------------------------------------------------------------------------

    async def set_stock(
        self,
        organization_id: str,
        product_id: int,
        variation_id: int | None,
        quantity: int,
        status: str | None,
        reconciliation_conflict: bool = False,
    ) -> None:
        """Overwrite stock unconditionally. Reserved for the reconciler."""
        self._require_scope(organization_id)
        model, conditions = self._stock_target(organization_id, product_id, variation_id)
        result = await self.session.execute(
            update(model)
            .where(*conditions)
            .values(
                stock_quantity=quantity,
                stock_status=status,
                version=model.version + 1,
                synced_at=self.clock(),
                reconciliation_conflict=reconciliation_conflict,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise TargetNotFound(
                f"No mirrored stock for product {product_id}"
                + (f" variation {variation_id}" if variation_id is not None else "")
            )

    async def compare_and_set_stock(
        self,
        organization_id: str,
        product_id: int,
        variation_id: int | None,
        expected_version: int,
        quantity: int,
        status: str | None,
    ) -> bool:
        """Write stock only if the row still carries ``expected_version``."""
        self._require_scope(organization_id)
        model, conditions = self._stock_target(organization_id, product_id, variation_id)
        result = await self.session.execute(
            update(model)
            .where(*conditions, model.version == expected_version)
            .values(
                stock_quantity=quantity,
                stock_status=status,
                version=model.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _require_scope(organization_id: str) -> None:
        if not organization_id:
            raise InvalidScope("organization_id is required")

    @staticmethod
    def _stock_target(
        organization_id: str, product_id: int, variation_id: int | None
    ) -> tuple[type[Product] | type[ProductVariation], list[Any]]:
        if variation_id is None:
            return Product, [
                Product.organization_id == organization_id,
                Product.id == product_id,
            ]
        return ProductVariation, [
            ProductVariation.organization_id == organization_id,
            ProductVariation.id == variation_id,
            ProductVariation.parent_id == product_id,
        ]

    @staticmethod
    def _is_stale(stored: datetime | None, incoming: datetime | None) -> bool:
        return stored is not None and incoming is not None and incoming < stored

    @staticmethod
    def _apply(row: Product | ProductVariation, values: dict[str, Any], now: datetime) -> None:
        stock_changed = (
            row.stock_quantity != values["stock_quantity"]
            or row.stock_status != values["stock_status"]
        )
        for name, value in values.items():
            setattr(row, name, value)
        row.synced_at = now
        row.reconciliation_conflict = False
        if stock_changed:
            row.version = row.version + 1

    async def _product_exists(self, organization_id: str, product_id: int) -> bool:
        result = await self.session.execute(
            select(Product.id).where(
                Product.organization_id == organization_id, Product.id == product_id
            )
        )
        return result.scalar_one_or_none() is not None

    def _validate(
        self,
        model: type[MirroredProduct] | type[MirroredVariation],
        raw: Any,
        organization_id: str,
        result: UpsertResult,
    ) -> MirroredProduct | MirroredVariation | None:
        try:
            record = model.model_validate(raw)
        except ValidationError as e:
            self._reject(
                result,
                organization_id,
                RecordFailure(
                    record_id=_raw_int(raw, "id"),
                    parent_id=_raw_int(raw, "parent_id"),
                    reason=_describe(e),
                ),
            )
            return None

        if record.organization_id != organization_id:
            self._reject(
                result,
                organization_id,
                RecordFailure(
                    record_id=record.id,
                    reason=f"record belongs to organization {record.organization_id}",
                ),
            )
            return None
        return record

    @staticmethod
    def _reject(result: UpsertResult, organization_id: str, failure: RecordFailure) -> None:
        logger.warning(
            "Rejected catalog record",
            organization_id=organization_id,
            record_id=failure.record_id,
            parent_id=failure.parent_id,
            reason=failure.reason,
        )
        result.failures.append(failure)

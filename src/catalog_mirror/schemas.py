"""Pydantic models shared by the services and the API layer."""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from catalog_mirror.infrastructure.database.models import AdjustmentType


def utcnow() -> datetime:
    """Current time as naive UTC, the representation used in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _parse_price(value: Any) -> Decimal | None:
    """External prices arrive as strings; blanks and garbage become None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    text_value = str(value).strip()
    if not text_value:
        return None
    try:
        return Decimal(text_value)
    except InvalidOperation:
        return None


# =============================================================================
# Catalog
# =============================================================================


class VariationAttribute(BaseModel):
    """One (name, option) pair of a variation, e.g. ("Size", "M")."""

    name: str = Field(..., min_length=1)
    option: str


class _MirroredRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    organization_id: str = Field(..., min_length=1)
    sku: str | None = None
    price: Decimal | None = None
    regular_price: Decimal | None = None
    sale_price: Decimal | None = None
    stock_quantity: int | None = None
    stock_status: str | None = None
    updated_at: datetime | None = None
    synced_at: datetime | None = None
    version: int | None = None
    reconciliation_conflict: bool = False

    @field_validator("price", "regular_price", "sale_price", mode="before")
    @classmethod
    def parse_price(cls, v: Any) -> Decimal | None:
        return _parse_price(v)

    @field_validator("updated_at", "synced_at", mode="after")
    @classmethod
    def normalize_timestamp(cls, v: datetime | None) -> datetime | None:
        return to_naive_utc(v)


class MirroredProduct(_MirroredRecord):
    """Product as mirrored from the external catalog."""

    name: str = ""
    type: str = "simple"
    status: str | None = None
    on_sale: bool = False
    manage_stock: bool = False


class MirroredVariation(_MirroredRecord):
    """Variation of a variable product."""

    parent_id: int
    attributes: list[VariationAttribute] = Field(default_factory=list)


class StockSnapshot(BaseModel):
    """Current mirrored stock of a product or variation."""

    product_id: int
    variation_id: int | None = None
    stock_quantity: int | None
    stock_status: str | None
    version: int
    synced_at: datetime | None = None
    refresh_advised: bool = False


# =============================================================================
# Stock Adjustments
# =============================================================================


class StockAdjustmentInput(BaseModel):
    """Request to record one manual stock adjustment."""

    organization_id: str
    product_id: int
    variation_id: int | None = None
    adjustment_type: AdjustmentType
    quantity_before: int
    quantity_adjusted: int
    reason: str = Field(..., min_length=1)
    notes: str | None = None
    actor_id: str | None = None

    @field_validator("reason")
    @classmethod
    def reason_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("reason must not be blank")
        return v


class StockAdjustment(BaseModel):
    """Recorded ledger entry."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    product_id: int
    variation_id: int | None = None
    adjustment_type: AdjustmentType
    quantity_before: int
    quantity_after: int
    quantity_adjusted: int
    reason: str
    notes: str | None = None
    actor_id: str | None = None
    created_at: datetime


# =============================================================================
# Sync Jobs
# =============================================================================


class SyncJobStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"


class SyncFailureReason(str, Enum):
    CANCELLED = "cancelled"
    PROVIDER_ERROR = "provider_error"
    INTERNAL_ERROR = "internal_error"
    FAILED = "failed"


class RecordFailure(BaseModel):
    """A record skipped during an upsert, with the reason."""

    record_id: int | None = None
    parent_id: int | None = None
    reason: str


class ReconciliationConflict(BaseModel):
    """Ledger entries would have driven stock below zero; clamped for review."""

    product_id: int
    variation_id: int | None = None
    external_quantity: int
    resolved_quantity: int


class SyncReport(BaseModel):
    """Per-job outcome counters surfaced to observers."""

    items_upserted: int = 0
    items_skipped_stale: int = 0
    failures: list[RecordFailure] = Field(default_factory=list)
    attribute_warnings: list[str] = Field(default_factory=list)
    conflicts: list[ReconciliationConflict] = Field(default_factory=list)
    targets_reconciled: int = 0


class SyncJobState(BaseModel):
    """Progress snapshot of a synchronization job."""

    job_id: str
    organization_id: str
    sync_type: str
    product_id: int | None = None
    status: SyncJobStatus = SyncJobStatus.IDLE
    progress: int = 0
    current_step: str = ""
    items_processed: int = 0
    total_items: int = 0
    error_message: str | None = None
    failure_reason: SyncFailureReason | None = None
    retriable: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None
    report: SyncReport = Field(default_factory=SyncReport)

    @property
    def is_active(self) -> bool:
        return self.status == SyncJobStatus.SYNCING

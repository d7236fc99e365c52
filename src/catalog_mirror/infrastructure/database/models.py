"""SQLAlchemy models for the catalog mirror.

These models are stored in the 'catalog' schema. Every mirrored row is keyed
by (organization_id, external id) so tenants never share rows.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Schema for all catalog mirror tables
SCHEMA = "catalog"


class Base(DeclarativeBase):
    """Base class for all models."""

    __table_args__ = {"schema": SCHEMA}


# =============================================================================
# Enums
# =============================================================================


class AdjustmentType(str, PyEnum):
    """Kinds of manual stock adjustment.

    Values are the codes stored by the original back office; the English
    names are accepted as aliases.
    """

    LOSS = "perda"
    BREAKAGE = "quebra"
    EXCHANGE = "troca"
    RETURN = "devolucao"
    CORRECTION = "correcao"

    @classmethod
    def _missing_(cls, value: object) -> Optional["AdjustmentType"]:
        if isinstance(value, str):
            key = value.strip()
            for member in cls:
                if key.upper() == member.name or key.lower() == member.value:
                    return member
        return None


# =============================================================================
# Organizations
# =============================================================================


class Organization(Base):
    """Tenant boundary. Provider credentials live in settings['woocommerce']."""

    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    settings: Mapped[Optional[dict]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )

    __table_args__ = ({"schema": SCHEMA},)


# =============================================================================
# Mirrored Catalog
# =============================================================================


class Product(Base):
    """Product mirrored from the external catalog."""

    __tablename__ = "products"

    organization_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    sku: Mapped[Optional[str]] = mapped_column(String(255))
    name: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    type: Mapped[str] = mapped_column(String(50), default="simple")
    status: Mapped[Optional[str]] = mapped_column(String(50))

    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    regular_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    sale_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    on_sale: Mapped[bool] = mapped_column(Boolean, default=False)

    manage_stock: Mapped[bool] = mapped_column(Boolean, default=False)
    stock_quantity: Mapped[Optional[int]] = mapped_column(Integer)
    stock_status: Mapped[Optional[str]] = mapped_column(String(50))

    # External date_modified, used for last-write-wins
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    # Local refresh time, used for staleness
    synced_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )
    # Bumped on every stock write; ledger writes compare-and-set on it
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    reconciliation_conflict: Mapped[bool] = mapped_column(Boolean, default=False)

    __table_args__ = (
        Index("ix_products_org_sku", "organization_id", "sku"),
        Index("ix_products_org_type", "organization_id", "type"),
        {"schema": SCHEMA},
    )


class ProductVariation(Base):
    """Variation of a variable product."""

    __tablename__ = "product_variations"

    organization_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    parent_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    sku: Mapped[Optional[str]] = mapped_column(String(255))

    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    regular_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    sale_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))

    stock_quantity: Mapped[Optional[int]] = mapped_column(Integer)
    stock_status: Mapped[Optional[str]] = mapped_column(String(50))

    # Ordered list of {"name": ..., "option": ...}
    attributes: Mapped[Optional[list]] = mapped_column(JSON, default=list)

    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    synced_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    reconciliation_conflict: Mapped[bool] = mapped_column(Boolean, default=False)

    __table_args__ = (
        Index("ix_product_variations_parent", "organization_id", "parent_id"),
        {"schema": SCHEMA},
    )


# =============================================================================
# Stock Adjustment Ledger
# =============================================================================


class StockAdjustmentRecord(Base):
    """Append-only ledger entry. Rows are never updated or deleted."""

    __tablename__ = "stock_adjustments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    product_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    variation_id: Mapped[Optional[int]] = mapped_column(BigInteger)

    adjustment_type: Mapped[AdjustmentType] = mapped_column(
        Enum(
            AdjustmentType,
            native_enum=False,
            length=20,
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    quantity_before: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_after: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_adjusted: Mapped[int] = mapped_column(Integer, nullable=False)

    reason: Mapped[str] = mapped_column(Text, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    actor_id: Mapped[Optional[str]] = mapped_column(String(255))

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index(
            "ix_stock_adjustments_target_created",
            "organization_id",
            "product_id",
            "variation_id",
            "created_at",
        ),
        Index("ix_stock_adjustments_org_created", "organization_id", "created_at"),
        {"schema": SCHEMA},
    )


# =============================================================================
# Sync Status
# =============================================================================


class SyncStatus(Base):
    """Track data synchronization status per organization and sync type."""

    __tablename__ = "sync_status"

    organization_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    sync_type: Mapped[str] = mapped_column(String(50), primary_key=True)
    status: Mapped[str] = mapped_column(String(50), default="idle")
    job_id: Mapped[Optional[str]] = mapped_column(String(36))
    progress: Mapped[int] = mapped_column(Integer, default=0)
    records_synced: Mapped[int] = mapped_column(Integer, default=0)
    items_failed: Mapped[int] = mapped_column(Integer, default=0)
    last_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = ({"schema": SCHEMA},)

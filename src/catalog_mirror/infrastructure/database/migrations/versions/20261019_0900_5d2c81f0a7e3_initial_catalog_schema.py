"""Initial catalog mirror schema

Revision ID: 5d2c81f0a7e3
Revises:
Create Date: 2026-10-19 09:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '5d2c81f0a7e3'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create organizations table
    op.create_table('organizations',
    sa.Column('id', sa.String(length=64), nullable=False),
    sa.Column('name', sa.String(length=255), nullable=False),
    sa.Column('settings', sa.JSON(), nullable=True),
    sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
    sa.PrimaryKeyConstraint('id'),
    schema='catalog'
    )

    # Create products table
    op.create_table('products',
    sa.Column('organization_id', sa.String(length=64), nullable=False),
    sa.Column('id', sa.BigInteger(), autoincrement=False, nullable=False),
    sa.Column('sku', sa.String(length=255), nullable=True),
    sa.Column('name', sa.String(length=500), nullable=False),
    sa.Column('type', sa.String(length=50), nullable=False),
    sa.Column('status', sa.String(length=50), nullable=True),
    sa.Column('price', sa.Numeric(precision=12, scale=2), nullable=True),
    sa.Column('regular_price', sa.Numeric(precision=12, scale=2), nullable=True),
    sa.Column('sale_price', sa.Numeric(precision=12, scale=2), nullable=True),
    sa.Column('on_sale', sa.Boolean(), nullable=False),
    sa.Column('manage_stock', sa.Boolean(), nullable=False),
    sa.Column('stock_quantity', sa.Integer(), nullable=True),
    sa.Column('stock_status', sa.String(length=50), nullable=True),
    sa.Column('updated_at', sa.DateTime(), nullable=True),
    sa.Column('synced_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
    sa.Column('version', sa.Integer(), nullable=False),
    sa.Column('reconciliation_conflict', sa.Boolean(), nullable=False),
    sa.PrimaryKeyConstraint('organization_id', 'id'),
    schema='catalog'
    )
    op.create_index('ix_products_org_sku', 'products', ['organization_id', 'sku'], unique=False, schema='catalog')
    op.create_index('ix_products_org_type', 'products', ['organization_id', 'type'], unique=False, schema='catalog')

    # Create product_variations table
    op.create_table('product_variations',
    sa.Column('organization_id', sa.String(length=64), nullable=False),
    sa.Column('id', sa.BigInteger(), autoincrement=False, nullable=False),
    sa.Column('parent_id', sa.BigInteger(), nullable=False),
    sa.Column('sku', sa.String(length=255), nullable=True),
    sa.Column('price', sa.Numeric(precision=12, scale=2), nullable=True),
    sa.Column('regular_price', sa.Numeric(precision=12, scale=2), nullable=True),
    sa.Column('sale_price', sa.Numeric(precision=12, scale=2), nullable=True),
    sa.Column('stock_quantity', sa.Integer(), nullable=True),
    sa.Column('stock_status', sa.String(length=50), nullable=True),
    sa.Column('attributes', sa.JSON(), nullable=True),
    sa.Column('updated_at', sa.DateTime(), nullable=True),
    sa.Column('synced_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
    sa.Column('version', sa.Integer(), nullable=False),
    sa.Column('reconciliation_conflict', sa.Boolean(), nullable=False),
    sa.PrimaryKeyConstraint('organization_id', 'id'),
    schema='catalog'
    )
    op.create_index('ix_product_variations_parent', 'product_variations', ['organization_id', 'parent_id'], unique=False, schema='catalog')

    # Create stock_adjustments table (append-only ledger)
    op.create_table('stock_adjustments',
    sa.Column('id', sa.String(length=36), nullable=False),
    sa.Column('organization_id', sa.String(length=64), nullable=False),
    sa.Column('product_id', sa.BigInteger(), nullable=False),
    sa.Column('variation_id', sa.BigInteger(), nullable=True),
    sa.Column('adjustment_type', sa.String(length=20), nullable=False),
    sa.Column('quantity_before', sa.Integer(), nullable=False),
    sa.Column('quantity_after', sa.Integer(), nullable=False),
    sa.Column('quantity_adjusted', sa.Integer(), nullable=False),
    sa.Column('reason', sa.Text(), nullable=False),
    sa.Column('notes', sa.Text(), nullable=True),
    sa.Column('actor_id', sa.String(length=255), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.PrimaryKeyConstraint('id'),
    schema='catalog'
    )
    op.create_index('ix_stock_adjustments_target_created', 'stock_adjustments', ['organization_id', 'product_id', 'variation_id', 'created_at'], unique=False, schema='catalog')
    op.create_index('ix_stock_adjustments_org_created', 'stock_adjustments', ['organization_id', 'created_at'], unique=False, schema='catalog')

    # Create sync_status table
    op.create_table('sync_status',
    sa.Column('organization_id', sa.String(length=64), nullable=False),
    sa.Column('sync_type', sa.String(length=50), nullable=False),
    sa.Column('status', sa.String(length=50), nullable=False),
    sa.Column('job_id', sa.String(length=36), nullable=True),
    sa.Column('progress', sa.Integer(), nullable=False),
    sa.Column('records_synced', sa.Integer(), nullable=False),
    sa.Column('items_failed', sa.Integer(), nullable=False),
    sa.Column('last_started_at', sa.DateTime(), nullable=True),
    sa.Column('last_sync_at', sa.DateTime(), nullable=True),
    sa.Column('error_message', sa.Text(), nullable=True),
    sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
    sa.PrimaryKeyConstraint('organization_id', 'sync_type'),
    schema='catalog'
    )


def downgrade() -> None:
    op.drop_table('sync_status', schema='catalog')

    op.drop_index('ix_stock_adjustments_org_created', table_name='stock_adjustments', schema='catalog')
    op.drop_index('ix_stock_adjustments_target_created', table_name='stock_adjustments', schema='catalog')
    op.drop_table('stock_adjustments', schema='catalog')

    op.drop_index('ix_product_variations_parent', table_name='product_variations', schema='catalog')
    op.drop_table('product_variations', schema='catalog')

    op.drop_index('ix_products_org_type', table_name='products', schema='catalog')
    op.drop_index('ix_products_org_sku', table_name='products', schema='catalog')
    op.drop_table('products', schema='catalog')

    op.drop_table('organizations', schema='catalog')

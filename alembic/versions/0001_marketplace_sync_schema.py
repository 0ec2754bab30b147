"""Marketplace sync schema - connections, rules, listings, queue, log, orders

Revision ID: 0001_marketplace_sync_schema
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '0001_marketplace_sync_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Enums are stored by name in plain VARCHAR columns (native_enum=False on the models)
ACTIVE_STATUS_CLAUSE = "status IN ('PENDING', 'PROCESSING')"


def upgrade() -> None:
    op.create_table(
        'marketplace_connections',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('marketplace', sa.String(32), nullable=False),
        sa.Column('external_user_id', sa.String(64), nullable=True),
        sa.Column('access_token_encrypted', sa.Text(), nullable=True),
        sa.Column('refresh_token_encrypted', sa.Text(), nullable=True),
        sa.Column('token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('tenant_id', 'marketplace', name='uq_marketplace_connection_tenant'),
    )
    op.create_index('ix_marketplace_connections_tenant_id', 'marketplace_connections', ['tenant_id'])
    op.create_index('ix_marketplace_connections_external_user_id', 'marketplace_connections', ['external_user_id'])

    op.create_table(
        'safety_margin_rules',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('marketplace', sa.String(32), nullable=False),
        sa.Column('product_id', sa.Uuid(), nullable=True),
        sa.Column('category_id', sa.Uuid(), nullable=True),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('margin_percentage', sa.Numeric(5, 2), nullable=False),
        sa.Column('scope_key', sa.String(64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('tenant_id', 'marketplace', 'scope_key', name='uq_safety_margin_scope'),
    )
    op.create_index('ix_safety_margin_rules_tenant_id', 'safety_margin_rules', ['tenant_id'])
    op.create_index('ix_safety_margin_rules_product_id', 'safety_margin_rules', ['product_id'])
    op.create_index('ix_safety_margin_rules_category_id', 'safety_margin_rules', ['category_id'])

    op.create_table(
        'marketplace_listings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('product_id', sa.Uuid(), nullable=False),
        sa.Column('variant_id', sa.Uuid(), nullable=True),
        sa.Column('variant_key', sa.String(40), nullable=False),
        sa.Column('marketplace', sa.String(32), nullable=False),
        sa.Column('listing_id', sa.String(64), nullable=False),
        sa.Column('external_variation_id', sa.String(64), nullable=True),
        sa.Column('title', sa.String(255), nullable=True),
        sa.Column('price', sa.Numeric(12, 2), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('tenant_id', 'marketplace', 'product_id', 'variant_key',
                            name='uq_marketplace_listing_variant'),
    )
    op.create_index('ix_marketplace_listings_tenant_id', 'marketplace_listings', ['tenant_id'])
    op.create_index('ix_marketplace_listings_product_id', 'marketplace_listings', ['product_id'])
    op.create_index('ix_marketplace_listings_external', 'marketplace_listings', ['marketplace', 'listing_id'])

    op.create_table(
        'marketplace_sync_queue',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('product_id', sa.Uuid(), nullable=False),
        sa.Column('variant_id', sa.Uuid(), nullable=True),
        sa.Column('marketplace', sa.String(32), nullable=False),
        sa.Column('sync_type', sa.String(16), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        sa.Column('max_retries', sa.Integer(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('dedup_key', sa.String(255), nullable=False),
        sa.Column('claim_token', sa.String(64), nullable=True),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('available_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_marketplace_sync_queue_tenant_id', 'marketplace_sync_queue', ['tenant_id'])
    op.create_index('ix_marketplace_sync_queue_claim_token', 'marketplace_sync_queue', ['claim_token'])
    op.create_index('ix_sync_queue_claim_order', 'marketplace_sync_queue', ['status', 'priority', 'created_at'])
    op.create_index(
        'uq_sync_queue_active_key',
        'marketplace_sync_queue',
        ['dedup_key'],
        unique=True,
        postgresql_where=sa.text(ACTIVE_STATUS_CLAUSE),
        sqlite_where=sa.text(ACTIVE_STATUS_CLAUSE),
    )

    op.create_table(
        'marketplace_sync_log',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('queue_item_id', sa.Integer(), nullable=True),
        sa.Column('product_id', sa.Uuid(), nullable=False),
        sa.Column('variant_id', sa.Uuid(), nullable=True),
        sa.Column('marketplace', sa.String(32), nullable=False),
        sa.Column('sync_type', sa.String(16), nullable=False),
        sa.Column('listing_id', sa.String(64), nullable=True),
        sa.Column('old_value', sa.String(64), nullable=True),
        sa.Column('new_value', sa.String(64), nullable=True),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        sa.Column('synced_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_marketplace_sync_log_tenant_id', 'marketplace_sync_log', ['tenant_id'])
    op.create_index('ix_marketplace_sync_log_queue_item_id', 'marketplace_sync_log', ['queue_item_id'])
    op.create_index('ix_marketplace_sync_log_product_id', 'marketplace_sync_log', ['product_id'])
    op.create_index('ix_marketplace_sync_log_synced_at', 'marketplace_sync_log', ['synced_at'])

    op.create_table(
        'marketplace_orders',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('marketplace', sa.String(32), nullable=False),
        sa.Column('external_order_id', sa.String(64), nullable=False),
        sa.Column('internal_order_id', sa.String(64), nullable=True),
        sa.Column('buyer_name', sa.String(255), nullable=True),
        sa.Column('buyer_email', sa.String(255), nullable=True),
        sa.Column('buyer_phone', sa.String(64), nullable=True),
        sa.Column('total_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('external_status', sa.String(32), nullable=True),
        sa.Column('payment_status', sa.String(32), nullable=True),
        sa.Column('payment_approved', sa.Boolean(), nullable=False),
        sa.Column('shipping_status', sa.String(32), nullable=True),
        sa.Column('shipping_substatus', sa.String(64), nullable=True),
        sa.Column('raw_data', sa.JSON(), nullable=True),
        sa.Column('imported_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('tenant_id', 'marketplace', 'external_order_id',
                            name='uq_marketplace_order_external'),
    )
    op.create_index('ix_marketplace_orders_tenant_id', 'marketplace_orders', ['tenant_id'])


def downgrade() -> None:
    op.drop_table('marketplace_orders')
    op.drop_table('marketplace_sync_log')
    op.drop_index('uq_sync_queue_active_key', table_name='marketplace_sync_queue')
    op.drop_table('marketplace_sync_queue')
    op.drop_table('marketplace_listings')
    op.drop_table('safety_margin_rules')
    op.drop_table('marketplace_connections')

"""create marketplace connection / listing / order tables

Revision ID: a1c4e2f9b730
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = 'a1c4e2f9b730'
down_revision = None
branch_labels = None
depends_on = None


JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'store_marketplaces',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('platform', sa.String(length=32), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('shop_domain', sa.String(length=255), nullable=True),
        sa.Column('external_store_id', sa.String(length=255), nullable=True),
        sa.Column('access_token', sa.Text(), nullable=True),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('credentials', JSON_TYPE, nullable=False),
        sa.Column('settings', JSON_TYPE, nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_store_marketplaces')),
        sa.UniqueConstraint('store_id', 'platform', 'shop_domain', 'external_store_id',
                            name='uq_store_marketplaces_identity'),
    )
    op.create_index(op.f('ix_store_marketplaces_store_id'), 'store_marketplaces', ['store_id'])
    op.create_index('ix_store_marketplaces_platform_shop', 'store_marketplaces', ['platform', 'shop_domain'])

    op.create_table(
        'platform_listings',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('store_marketplace_id', sa.Integer(), nullable=False),
        sa.Column('external_listing_id', sa.String(length=255), nullable=False),
        sa.Column('title', sa.String(length=512), nullable=True),
        sa.Column('sku', sa.String(length=255), nullable=True),
        sa.Column('platform_price', sa.Numeric(12, 2), nullable=True),
        sa.Column('platform_quantity', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('platform_data', JSON_TYPE, nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['store_marketplace_id'], ['store_marketplaces.id'], ondelete='CASCADE',
                                name=op.f('fk_platform_listings_store_marketplace_id_store_marketplaces')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_platform_listings')),
        sa.UniqueConstraint('store_marketplace_id', 'external_listing_id',
                            name='uq_platform_listings_connection_external'),
    )
    op.create_index(op.f('ix_platform_listings_store_marketplace_id'), 'platform_listings', ['store_marketplace_id'])
    op.create_index(op.f('ix_platform_listings_sku'), 'platform_listings', ['sku'])

    money = dict(nullable=False, server_default=sa.text('0'))
    op.create_table(
        'platform_orders',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('store_marketplace_id', sa.Integer(), nullable=False),
        sa.Column('external_order_id', sa.String(length=255), nullable=False),
        sa.Column('order_number', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='pending'),
        sa.Column('fulfillment_status', sa.String(length=32), nullable=True),
        sa.Column('payment_status', sa.String(length=32), nullable=True),
        sa.Column('total', sa.Numeric(12, 2), **money),
        sa.Column('subtotal', sa.Numeric(12, 2), **money),
        sa.Column('shipping_cost', sa.Numeric(12, 2), **money),
        sa.Column('tax', sa.Numeric(12, 2), **money),
        sa.Column('discount', sa.Numeric(12, 2), **money),
        sa.Column('currency', sa.String(length=8), nullable=False, server_default='USD'),
        sa.Column('customer_data', JSON_TYPE, nullable=False),
        sa.Column('shipping_address', JSON_TYPE, nullable=False),
        sa.Column('billing_address', JSON_TYPE, nullable=False),
        sa.Column('line_items', JSON_TYPE, nullable=False),
        sa.Column('platform_data', JSON_TYPE, nullable=False),
        sa.Column('ordered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['store_marketplace_id'], ['store_marketplaces.id'], ondelete='CASCADE',
                                name=op.f('fk_platform_orders_store_marketplace_id_store_marketplaces')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_platform_orders')),
        sa.UniqueConstraint('store_marketplace_id', 'external_order_id',
                            name='uq_platform_orders_connection_external'),
    )
    op.create_index(op.f('ix_platform_orders_store_marketplace_id'), 'platform_orders', ['store_marketplace_id'])


def downgrade() -> None:
    op.drop_index(op.f('ix_platform_orders_store_marketplace_id'), table_name='platform_orders')
    op.drop_table('platform_orders')
    op.drop_index(op.f('ix_platform_listings_sku'), table_name='platform_listings')
    op.drop_index(op.f('ix_platform_listings_store_marketplace_id'), table_name='platform_listings')
    op.drop_table('platform_listings')
    op.drop_index('ix_store_marketplaces_platform_shop', table_name='store_marketplaces')
    op.drop_index(op.f('ix_store_marketplaces_store_id'), table_name='store_marketplaces')
    op.drop_table('store_marketplaces')

"""marketplace_orders_schema

Revision ID: 3c7e91d2a4b8
Revises: 
Create Date: 2026-10-17 09:00:00.000000

Checkout tickets, per-vendor order slices, carrier tracking history,
escrow mirror, dispute chat and the transactional outbox (with the trace
context columns the outbox worker continues traces from).
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
import sqlmodel

# revision identifiers, used by Alembic.
revision: str = '3c7e91d2a4b8'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

AutoString = sqlmodel.sql.sqltypes.AutoString


def money(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.Numeric(precision=12, scale=2), nullable=nullable)


def timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    # Catalog read model
    op.create_table(
        'products',
        sa.Column('id', AutoString(), nullable=False),
        sa.Column('vendor_id', AutoString(), nullable=False),
        sa.Column('name', AutoString(), nullable=False),
        money('price'),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('track_quantity', sa.Boolean(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        timestamp('updated_at'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_products_vendor_id'), 'products', ['vendor_id'], unique=False)

    op.create_table(
        'coupons',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('code', AutoString(), nullable=False),
        sa.Column('type', sa.String(), nullable=False),
        money('value'),
        money('maximum_discount', nullable=True),
        money('minimum_amount'),
        timestamp('valid_from'),
        timestamp('valid_until'),
        sa.Column('usage_limit', sa.Integer(), nullable=True),
        sa.Column('used_count', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_coupons_code'), 'coupons', ['code'], unique=True)

    op.create_table(
        'carts',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('user_id', AutoString(), nullable=False),
        sa.Column('items', sa.JSON(), nullable=False),
        timestamp('updated_at'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_carts_user_id'), 'carts', ['user_id'], unique=True)

    # Checkout
    op.create_table(
        'checkout_tickets',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('intent_id', AutoString(), nullable=False),
        sa.Column('gateway', AutoString(), nullable=False),
        sa.Column('customer_id', AutoString(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('amount_minor', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        money('total'),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('order_ids', sa.JSON(), nullable=False),
        sa.Column('capture_id', AutoString(), nullable=True),
        sa.Column('last_error', AutoString(), nullable=True),
        timestamp('created_at'),
        timestamp('updated_at'),
        timestamp('committed_at', nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_checkout_tickets_intent_id'), 'checkout_tickets', ['intent_id'], unique=True)
    op.create_index(op.f('ix_checkout_tickets_customer_id'), 'checkout_tickets', ['customer_id'], unique=False)
    op.create_index(op.f('ix_checkout_tickets_status'), 'checkout_tickets', ['status'], unique=False)

    # Orders
    op.create_table(
        'orders',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('order_number', AutoString(), nullable=False),
        sa.Column('customer_id', AutoString(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('payment_status', AutoString(), nullable=False),
        sa.Column('payment_method', AutoString(), nullable=False),
        sa.Column('payment_gateway', AutoString(), nullable=True),
        sa.Column('gateway_order_id', AutoString(), nullable=True),
        sa.Column('gateway_payment_id', AutoString(), nullable=True),
        sa.Column('checkout_ticket_id', sa.UUID(), nullable=True),
        money('subtotal'),
        money('tax'),
        money('shipping'),
        money('discount'),
        money('total'),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('coupon_code', AutoString(), nullable=True),
        sa.Column('shipping_address', sa.JSON(), nullable=False),
        sa.Column('billing_address', sa.JSON(), nullable=False),
        sa.Column('notes', AutoString(), nullable=True),
        timestamp('created_at'),
        timestamp('updated_at'),
        sa.ForeignKeyConstraint(['checkout_ticket_id'], ['checkout_tickets.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_orders_order_number'), 'orders', ['order_number'], unique=True)
    op.create_index(op.f('ix_orders_customer_id'), 'orders', ['customer_id'], unique=False)
    op.create_index(op.f('ix_orders_status'), 'orders', ['status'], unique=False)
    op.create_index(op.f('ix_orders_gateway_order_id'), 'orders', ['gateway_order_id'], unique=False)
    op.create_index(op.f('ix_orders_checkout_ticket_id'), 'orders', ['checkout_ticket_id'], unique=False)
    op.create_index('ix_orders_customer_created', 'orders', ['customer_id', 'created_at'], unique=False)

    op.create_table(
        'vendor_orders',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('order_id', sa.UUID(), nullable=False),
        sa.Column('vendor_id', AutoString(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        money('subtotal'),
        money('commission'),
        money('vendor_amount'),
        sa.Column('carrier', AutoString(), nullable=True),
        sa.Column('tracking_number', AutoString(), nullable=True),
        sa.Column('courier_code', AutoString(), nullable=True),
        sa.Column('tracking_url', AutoString(), nullable=True),
        timestamp('tracking_validated_at', nullable=True),
        timestamp('tracking_updated_at', nullable=True),
        timestamp('shipped_at', nullable=True),
        timestamp('delivered_at', nullable=True),
        timestamp('created_at'),
        timestamp('updated_at'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_vendor_orders_order_id'), 'vendor_orders', ['order_id'], unique=False)
    op.create_index(op.f('ix_vendor_orders_vendor_id'), 'vendor_orders', ['vendor_id'], unique=False)
    op.create_index(op.f('ix_vendor_orders_status'), 'vendor_orders', ['status'], unique=False)
    op.create_index('ix_vendor_orders_vendor_created', 'vendor_orders', ['vendor_id', 'created_at'], unique=False)

    op.create_table(
        'order_items',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('order_id', sa.UUID(), nullable=False),
        sa.Column('vendor_order_id', sa.UUID(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('product_id', AutoString(), nullable=False),
        sa.Column('vendor_id', AutoString(), nullable=False),
        sa.Column('name', AutoString(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        money('unit_price'),
        sa.Column('variant', sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ),
        sa.ForeignKeyConstraint(['vendor_order_id'], ['vendor_orders.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_order_items_order_id'), 'order_items', ['order_id'], unique=False)
    op.create_index(op.f('ix_order_items_vendor_order_id'), 'order_items', ['vendor_order_id'], unique=False)
    op.create_index(op.f('ix_order_items_product_id'), 'order_items', ['product_id'], unique=False)

    op.create_table(
        'tracking_events',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('vendor_order_id', sa.UUID(), nullable=False),
        timestamp('occurred_at'),
        sa.Column('location', AutoString(), nullable=False),
        sa.Column('status', AutoString(), nullable=False),
        sa.Column('description', AutoString(), nullable=False),
        sa.Column('raw_data', sa.JSON(), nullable=True),
        timestamp('created_at'),
        sa.ForeignKeyConstraint(['vendor_order_id'], ['vendor_orders.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('vendor_order_id', 'occurred_at', 'status', name='uq_tracking_event'),
    )

    op.create_table(
        'escrows',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('order_id', sa.UUID(), nullable=False),
        sa.Column('address', AutoString(), nullable=False),
        sa.Column('status', AutoString(), nullable=False),
        sa.Column('buyer_address', AutoString(), nullable=False),
        sa.Column('seller_address', AutoString(), nullable=False),
        money('amount'),
        sa.Column('transactions', sa.JSON(), nullable=False),
        timestamp('created_at'),
        timestamp('updated_at'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id'),
    )
    op.create_index(op.f('ix_escrows_address'), 'escrows', ['address'], unique=False)

    # Disputes
    op.create_table(
        'disputes',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('order_id', sa.UUID(), nullable=False),
        sa.Column('buyer_id', AutoString(), nullable=False),
        sa.Column('seller_id', AutoString(), nullable=False),
        sa.Column('raised_by', AutoString(), nullable=False),
        sa.Column('raised_by_role', AutoString(), nullable=False),
        sa.Column('reason', sa.String(length=1000), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('priority', AutoString(), nullable=False),
        sa.Column('assigned_admin_id', AutoString(), nullable=True),
        sa.Column('resolution_winner', AutoString(), nullable=True),
        sa.Column('resolved_by', AutoString(), nullable=True),
        timestamp('resolved_at', nullable=True),
        sa.Column('resolution_notes', AutoString(), nullable=True),
        timestamp('last_activity_at'),
        timestamp('created_at'),
        timestamp('updated_at'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id'),
    )
    op.create_index(op.f('ix_disputes_buyer_id'), 'disputes', ['buyer_id'], unique=False)
    op.create_index(op.f('ix_disputes_seller_id'), 'disputes', ['seller_id'], unique=False)
    op.create_index(op.f('ix_disputes_status'), 'disputes', ['status'], unique=False)
    op.create_index(op.f('ix_disputes_assigned_admin_id'), 'disputes', ['assigned_admin_id'], unique=False)

    op.create_table(
        'dispute_messages',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('dispute_id', sa.UUID(), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('sender_id', AutoString(), nullable=False),
        sa.Column('sender_role', AutoString(), nullable=False),
        sa.Column('content', AutoString(), nullable=False),
        sa.Column('images', sa.JSON(), nullable=False),
        timestamp('created_at'),
        sa.ForeignKeyConstraint(['dispute_id'], ['disputes.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('dispute_id', 'sequence', name='uq_dispute_message_sequence'),
    )
    op.create_index(op.f('ix_dispute_messages_dispute_id'), 'dispute_messages', ['dispute_id'], unique=False)

    op.create_table(
        'message_reads',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('message_id', sa.UUID(), nullable=False),
        sa.Column('user_id', AutoString(), nullable=False),
        timestamp('read_at'),
        sa.ForeignKeyConstraint(['message_id'], ['dispute_messages.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('message_id', 'user_id', name='uq_message_read'),
    )
    op.create_index(op.f('ix_message_reads_user_id'), 'message_reads', ['user_id'], unique=False)

    # Transactional outbox
    op.create_table(
        'outbox_events',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('event_id', AutoString(), nullable=False),
        sa.Column('event_type', AutoString(), nullable=False),
        sa.Column('topic', AutoString(), nullable=False),
        sa.Column('partition_key', AutoString(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('trace_id', sa.String(length=32), nullable=True),
        sa.Column('span_id', sa.String(length=16), nullable=True),
        sa.Column('parent_span_id', sa.String(length=16), nullable=True),
        sa.Column('published', sa.Boolean(), nullable=False),
        timestamp('published_at', nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('last_error', AutoString(), nullable=True),
        timestamp('created_at'),
        timestamp('updated_at'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_outbox_events_event_id'), 'outbox_events', ['event_id'], unique=True)
    op.create_index(op.f('ix_outbox_events_event_type'), 'outbox_events', ['event_type'], unique=False)
    op.create_index(op.f('ix_outbox_events_topic'), 'outbox_events', ['topic'], unique=False)
    op.create_index(op.f('ix_outbox_events_published'), 'outbox_events', ['published'], unique=False)
    op.create_index(op.f('ix_outbox_events_trace_id'), 'outbox_events', ['trace_id'], unique=False)


def downgrade() -> None:
    # Drop tables in reverse dependency order; indexes go with their tables
    for table in (
        'outbox_events',
        'message_reads',
        'dispute_messages',
        'disputes',
        'escrows',
        'tracking_events',
        'order_items',
        'vendor_orders',
        'orders',
        'checkout_tickets',
        'carts',
        'coupons',
        'products',
    ):
        op.drop_table(table)

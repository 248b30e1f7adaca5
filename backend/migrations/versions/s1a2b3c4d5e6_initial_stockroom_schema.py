"""initial stockroom schema

Revision ID: s1a2b3c4d5e6
Revises:
Create Date: 2026-10-19 00:00:00.000000

This migration creates the complete Stockroom schema from scratch:
- products / suppliers: reference data
- stock_movements: append-only stock ledger (INCOMING / OUTGOING / ADJUSTMENT)
- stock_balances: per-product balance view, on_hand >= 0 enforced by the database
- orders / order_items / order_events: sales orders and their append-only timeline
- purchase_orders / purchase_order_items: supplier orders with cumulative receiving
- document_sequences, idempotency_records, notification_dispatches
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 's1a2b3c4d5e6'
down_revision = None
branch_labels = None
depends_on = None


def _now():
    return sa.text('CURRENT_TIMESTAMP')


def upgrade():
    """
    Create all tables.

    WHY: Check constraints on stock_movements and stock_balances are the
    store-level guarantees for the ledger sign convention and non-negative
    stock, so they live in the schema and not only in application code.
    """

    # ============================================================================
    # Reference data
    # ============================================================================
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price_cents', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.PrimaryKeyConstraint('id', name='pk_products'),
        sa.UniqueConstraint('sku', name='uq_products_sku'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_products_active', 'products', ['is_active'])

    op.create_table(
        'suppliers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('contact_email', sa.String(length=255), nullable=True),
        sa.Column('contact_phone', sa.String(length=64), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.PrimaryKeyConstraint('id', name='pk_suppliers'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_suppliers_is_active', 'suppliers', ['is_active'])

    # ============================================================================
    # Stock ledger
    # ============================================================================
    op.create_table(
        'stock_movements',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('movement_type', sa.String(length=16), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('delta', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(length=255), nullable=True),
        sa.Column('reference', sa.String(length=64), nullable=True),
        sa.Column('created_by', sa.String(length=128), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], name='fk_stock_movements_product_id_products'),
        sa.PrimaryKeyConstraint('id', name='pk_stock_movements'),
        sa.CheckConstraint(
            "movement_type IN ('INCOMING', 'OUTGOING', 'ADJUSTMENT')",
            name='ck_stock_movements_type',
        ),
        sa.CheckConstraint(
            "(movement_type = 'INCOMING' AND quantity > 0 AND delta = quantity)"
            " OR (movement_type = 'OUTGOING' AND quantity > 0 AND delta = -quantity)"
            " OR (movement_type = 'ADJUSTMENT' AND quantity <> 0 AND delta = quantity)",
            name='ck_stock_movements_sign',
        ),
        sqlite_autoincrement=True
    )
    op.create_index('ix_stock_movements_product_id', 'stock_movements', ['product_id'])
    op.create_index('ix_stock_movements_movement_type', 'stock_movements', ['movement_type'])
    op.create_index('ix_stock_movements_occurred_at', 'stock_movements', ['occurred_at'])
    op.create_index('ix_stock_movements_product_occurred', 'stock_movements', ['product_id', 'occurred_at'])
    op.create_index('ix_stock_movements_reference', 'stock_movements', ['reference'])

    op.create_table(
        'stock_balances',
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('on_hand', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('movement_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_movement_id', sa.Integer(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], name='fk_stock_balances_product_id_products'),
        sa.ForeignKeyConstraint(['last_movement_id'], ['stock_movements.id'], name='fk_stock_balances_last_movement_id_stock_movements'),
        sa.PrimaryKeyConstraint('product_id', name='pk_stock_balances'),
        sa.CheckConstraint('on_hand >= 0', name='ck_stock_balances_non_negative'),
    )

    # ============================================================================
    # Sales orders
    # ============================================================================
    op.create_table(
        'orders',
        sa.Column('uuid', sa.String(length=36), nullable=False),
        sa.Column('order_number', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='Draft'),
        sa.Column('customer_name', sa.String(length=255), nullable=True),
        sa.Column('customer_email', sa.String(length=255), nullable=True),
        sa.Column('discount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('order_total_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('storefront_id', sa.String(length=64), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.PrimaryKeyConstraint('uuid', name='pk_orders'),
        sa.UniqueConstraint('order_number', name='uq_orders_order_number'),
    )
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_status_created', 'orders', ['status', 'created_at'])
    op.create_index('ix_orders_storefront_id', 'orders', ['storefront_id'])

    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_uuid', sa.String(length=36), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.Integer(), nullable=False),
        sa.Column('discount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.ForeignKeyConstraint(['order_uuid'], ['orders.uuid'], name='fk_order_items_order_uuid_orders'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], name='fk_order_items_product_id_products'),
        sa.PrimaryKeyConstraint('id', name='pk_order_items'),
        sa.CheckConstraint('quantity > 0', name='ck_order_items_quantity_positive'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_order_items_order_uuid', 'order_items', ['order_uuid'])
    op.create_index('ix_order_items_product_id', 'order_items', ['product_id'])

    op.create_table(
        'order_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_uuid', sa.String(length=36), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(length=32), nullable=False),
        sa.Column('event_data', sa.JSON(), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['order_uuid'], ['orders.uuid'], name='fk_order_events_order_uuid_orders'),
        sa.PrimaryKeyConstraint('id', name='pk_order_events'),
        sa.UniqueConstraint('order_uuid', 'sequence', name='uq_order_events_order_sequence'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_order_events_order_uuid', 'order_events', ['order_uuid'])
    op.create_index('ix_order_events_event_type', 'order_events', ['event_type'])
    op.create_index('ix_order_events_created_at', 'order_events', ['created_at'])
    op.create_index('ix_order_events_order_type', 'order_events', ['order_uuid', 'event_type'])

    # ============================================================================
    # Purchase orders
    # ============================================================================
    op.create_table(
        'purchase_orders',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_number', sa.String(length=64), nullable=False),
        sa.Column('supplier_id', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='Pending'),
        sa.Column('order_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('total_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_by', sa.String(length=128), nullable=True),
        sa.Column('approved_by', sa.String(length=128), nullable=True),
        sa.Column('cancelled_by', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['supplier_id'], ['suppliers.id'], name='fk_purchase_orders_supplier_id_suppliers'),
        sa.PrimaryKeyConstraint('id', name='pk_purchase_orders'),
        sa.UniqueConstraint('order_number', name='uq_purchase_orders_order_number'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_purchase_orders_status', 'purchase_orders', ['status'])
    op.create_index('ix_purchase_orders_supplier_id', 'purchase_orders', ['supplier_id'])

    op.create_table(
        'purchase_order_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('purchase_order_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('quantity_ordered', sa.Integer(), nullable=False),
        sa.Column('quantity_received', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('unit_cost_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['purchase_order_id'], ['purchase_orders.id'], name='fk_purchase_order_items_purchase_order_id_purchase_orders'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], name='fk_purchase_order_items_product_id_products'),
        sa.PrimaryKeyConstraint('id', name='pk_purchase_order_items'),
        sa.UniqueConstraint('purchase_order_id', 'product_id', name='uq_po_items_po_product'),
        sa.CheckConstraint('quantity_ordered > 0', name='ck_po_items_ordered_positive'),
        sa.CheckConstraint('quantity_received >= 0', name='ck_po_items_received_non_negative'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_purchase_order_items_purchase_order_id', 'purchase_order_items', ['purchase_order_id'])
    op.create_index('ix_purchase_order_items_product_id', 'purchase_order_items', ['product_id'])

    # ============================================================================
    # Document numbers, idempotency, notification dispatches
    # ============================================================================
    op.create_table(
        'document_sequences',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('document_type', sa.String(length=32), nullable=False),
        sa.Column('next_number', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.PrimaryKeyConstraint('id', name='pk_document_sequences'),
        sa.UniqueConstraint('document_type', name='uq_doc_sequences_type'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_document_sequences_document_type', 'document_sequences', ['document_type'])

    op.create_table(
        'idempotency_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('scope', sa.String(length=128), nullable=False),
        sa.Column('key', sa.String(length=255), nullable=False),
        sa.Column('command', sa.String(length=64), nullable=False),
        sa.Column('fingerprint', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='IN_FLIGHT'),
        sa.Column('resource_type', sa.String(length=32), nullable=True),
        sa.Column('resource_id', sa.String(length=64), nullable=True),
        sa.Column('response', sa.JSON(), nullable=True),
        sa.Column('locked_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_idempotency_records'),
        sa.UniqueConstraint('scope', 'key', name='uq_idempotency_scope_key'),
        sqlite_autoincrement=True
    )

    op.create_table(
        'notification_dispatches',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_uuid', sa.String(length=36), nullable=False),
        sa.Column('template_type', sa.String(length=64), nullable=False),
        sa.Column('recipient', sa.String(length=255), nullable=False),
        sa.Column('message_id', sa.String(length=255), nullable=True),
        sa.Column('idempotency_key', sa.String(length=255), nullable=True),
        sa.Column('consumed_by_event_id', sa.Integer(), nullable=True),
        sa.Column('voided_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['order_uuid'], ['orders.uuid'], name='fk_notification_dispatches_order_uuid_orders'),
        sa.ForeignKeyConstraint(['consumed_by_event_id'], ['order_events.id'], name='fk_notification_dispatches_consumed_by_event_id_order_events'),
        sa.PrimaryKeyConstraint('id', name='pk_notification_dispatches'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_notification_dispatches_order_uuid', 'notification_dispatches', ['order_uuid'])
    op.create_index(
        'ix_notification_dispatches_order_template',
        'notification_dispatches',
        ['order_uuid', 'template_type'],
    )


def downgrade():
    op.drop_table('notification_dispatches')
    op.drop_table('idempotency_records')
    op.drop_table('document_sequences')
    op.drop_table('purchase_order_items')
    op.drop_table('purchase_orders')
    op.drop_table('order_events')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('stock_balances')
    op.drop_table('stock_movements')
    op.drop_table('suppliers')
    op.drop_table('products')

"""Initial checkout schema (stores, stock, carts, shipments, credit, sagas, webhooks)

Revision ID: 20260101_000001
Revises:
Create Date: 2026-01-01 09:00:00.000000

WHAT:
    Creates the checkout tables:
    - stores, stock: sellers and their inventory
    - carts: pre-checkout line items
    - shipments: one row per completed payment
    - credit_ledger_entries, credit_balances: buyer store credit
    - fulfillment_sagas, fulfillment_saga_steps: webhook side-effect outbox
    - webhook_events: processed deliveries

WHY:
    Concurrency guarantees live in the database: unique payment ids, unique
    ledger idempotency keys, non-negative stock counters and at most one open
    shipment per (customer, store) through a partial unique index.

REFERENCES:
    - paylive/models.py
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20260101_000001'
down_revision = None
branch_labels = None
depends_on = None


CREDIT_REASONS = (
    'opening_balance', 'sold_out_refund', 'credit_applied', 'promo_credit_applied',
    'credit_topup', 'delivery_debt_settled', 'delivery_adjustment',
)


def upgrade() -> None:
    # =========================================================================
    # STEP 1: Stores and stock
    # =========================================================================
    op.create_table(
        'stores',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('slug', sa.String(), nullable=False),
        sa.Column('clerk_id', sa.String(), nullable=True),
        sa.Column('owner_email', sa.String(), nullable=True),
        sa.Column('stripe_id', sa.String(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('website', sa.String(), nullable=True),
        sa.Column('address', sa.JSON(), nullable=True),
        sa.Column('iban_bic', sa.JSON(), nullable=True),
        sa.Column('payout_created_at', sa.DateTime(), nullable=True),
        sa.Column('payout_facture_id', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tva_applicable', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_stores_slug', 'stores', ['slug'], unique=True)
    op.create_index('ix_stores_clerk_id', 'stores', ['clerk_id'])

    op.create_table(
        'stock',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('store_id', sa.Integer(), sa.ForeignKey('stores.id', ondelete='CASCADE'), nullable=False),
        sa.Column('product_reference', sa.String(), nullable=False),
        sa.Column('product_stripe_id', sa.String(), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=True),
        sa.Column('bought', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('weight', sa.Float(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('store_id', 'product_reference', name='uq_stock_store_reference'),
        sa.CheckConstraint('quantity IS NULL OR quantity >= 0', name='ck_stock_quantity_non_negative'),
        sa.CheckConstraint('bought >= 0', name='ck_stock_bought_non_negative'),
    )
    op.create_index('ix_stock_store_id', 'stock', ['store_id'])
    op.create_index('ix_stock_product_stripe_id', 'stock', ['product_stripe_id'])

    # =========================================================================
    # STEP 2: Carts
    # =========================================================================
    op.create_table(
        'carts',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('store_id', sa.Integer(), sa.ForeignKey('stores.id', ondelete='CASCADE'), nullable=False),
        sa.Column('customer_stripe_id', sa.String(), nullable=False),
        sa.Column('product_reference', sa.String(), nullable=False),
        sa.Column('value', sa.Float(), nullable=False, server_default='0'),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('payment_id', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_carts_store_id', 'carts', ['store_id'])
    op.create_index('ix_carts_customer_stripe_id', 'carts', ['customer_stripe_id'])
    op.create_index('ix_carts_payment_id', 'carts', ['payment_id'])

    # =========================================================================
    # STEP 3: Shipments
    # =========================================================================
    op.create_table(
        'shipments',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('shipment_id', sa.String(), nullable=True),
        sa.Column('payment_id', sa.String(), nullable=False),
        sa.Column('session_id', sa.String(), nullable=True),
        sa.Column('store_id', sa.Integer(), sa.ForeignKey('stores.id'), nullable=False),
        sa.Column('customer_stripe_id', sa.String(), nullable=False),
        sa.Column('line_items', sa.JSON(), nullable=True),
        sa.Column('product_reference', sa.Text(), nullable=True),
        sa.Column('paid_value', sa.Integer(), nullable=True),
        sa.Column('customer_spent_amount', sa.Integer(), nullable=True),
        sa.Column('store_earnings_amount', sa.Integer(), nullable=True),
        sa.Column('promo_code', sa.String(), nullable=True),
        sa.Column('delivery_cost', sa.Numeric(10, 2), nullable=True),
        sa.Column('estimated_delivery_cost', sa.Numeric(10, 2), nullable=True),
        sa.Column('weight', sa.Float(), nullable=True),
        sa.Column('status', sa.String(), nullable=True),
        sa.Column('delivery_method', sa.String(), nullable=True),
        sa.Column('delivery_network', sa.String(), nullable=True),
        sa.Column('pickup_point', sa.JSON(), nullable=True),
        sa.Column('dropoff_point', sa.JSON(), nullable=True),
        sa.Column('tracking_url', sa.String(), nullable=True),
        sa.Column('is_final_destination', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('delivery_date', sa.DateTime(), nullable=True),
        sa.Column('document_created', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('document_url', sa.String(), nullable=True),
        sa.Column('boxtal_shipping_json', sa.JSON(), nullable=True),
        sa.Column('boxtal_shipment_creation_failed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_open_shipment', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('cancel_requested', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('return_requested', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('payment_id', name='uq_shipments_payment_id'),
    )
    op.create_index('ix_shipments_shipment_id', 'shipments', ['shipment_id'])
    op.create_index('ix_shipments_store_id', 'shipments', ['store_id'])
    op.create_index('ix_shipments_customer_stripe_id', 'shipments', ['customer_stripe_id'])
    # At most one open shipment per (customer, store)
    op.create_index(
        'uq_shipments_one_open_per_customer_store',
        'shipments',
        ['customer_stripe_id', 'store_id'],
        unique=True,
        postgresql_where=sa.text('is_open_shipment'),
        sqlite_where=sa.text('is_open_shipment = 1'),
    )

    # =========================================================================
    # STEP 4: Credit ledger
    # =========================================================================
    op.create_table(
        'credit_ledger_entries',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('customer_stripe_id', sa.String(), nullable=False),
        sa.Column('delta_cents', sa.Integer(), nullable=False),
        sa.Column('reason', sa.Enum(*CREDIT_REASONS, name='credit_reason'), nullable=False),
        sa.Column('idempotency_key', sa.String(), nullable=False),
        sa.Column('shipment_id', sa.Integer(), sa.ForeignKey('shipments.id', ondelete='SET NULL'), nullable=True),
        sa.Column('payment_id', sa.String(), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('idempotency_key', name='uq_credit_ledger_idempotency_key'),
    )
    op.create_index('ix_credit_ledger_entries_customer_stripe_id', 'credit_ledger_entries', ['customer_stripe_id'])
    op.create_index('ix_credit_ledger_entries_shipment_id', 'credit_ledger_entries', ['shipment_id'])

    op.create_table(
        'credit_balances',
        sa.Column('customer_stripe_id', sa.String(), primary_key=True),
        sa.Column('balance_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )

    # =========================================================================
    # STEP 5: Fulfillment sagas
    # =========================================================================
    op.create_table(
        'fulfillment_sagas',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('payment_id', sa.String(), nullable=False),
        sa.Column('session_id', sa.String(), nullable=True),
        sa.Column('event_id', sa.String(), nullable=True),
        sa.Column('customer_stripe_id', sa.String(), nullable=True),
        sa.Column('store_id', sa.Integer(), sa.ForeignKey('stores.id'), nullable=True),
        sa.Column(
            'status',
            sa.Enum('started', 'blocked', 'partial', 'completed', 'aborted', name='saga_status'),
            nullable=False,
            server_default='started',
        ),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('shipment_id', sa.Integer(), sa.ForeignKey('shipments.id', ondelete='SET NULL'), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('payment_id', name='uq_fulfillment_sagas_payment_id'),
    )
    op.create_index('ix_fulfillment_sagas_customer_stripe_id', 'fulfillment_sagas', ['customer_stripe_id'])

    op.create_table(
        'fulfillment_saga_steps',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            'saga_id',
            sa.Integer(),
            sa.ForeignKey('fulfillment_sagas.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column(
            'status',
            sa.Enum('pending', 'succeeded', 'failed', 'skipped', name='saga_step_status'),
            nullable=False,
            server_default='pending',
        ),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('saga_id', 'name', name='uq_saga_step_name'),
    )
    op.create_index('ix_fulfillment_saga_steps_saga_id', 'fulfillment_saga_steps', ['saga_id'])

    # =========================================================================
    # STEP 6: Webhook deliveries
    # =========================================================================
    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('provider', sa.Enum('stripe', 'boxtal', name='webhook_provider'), nullable=False),
        sa.Column('event_key', sa.String(), nullable=False),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('object_id', sa.String(), nullable=True),
        sa.Column('payload_json', sa.JSON(), nullable=True),
        sa.Column('processing_result', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('event_key', name='uq_webhook_events_event_key'),
    )


def downgrade() -> None:
    op.drop_table('webhook_events')
    op.drop_index('ix_fulfillment_saga_steps_saga_id', table_name='fulfillment_saga_steps')
    op.drop_table('fulfillment_saga_steps')
    op.drop_index('ix_fulfillment_sagas_customer_stripe_id', table_name='fulfillment_sagas')
    op.drop_table('fulfillment_sagas')
    op.drop_table('credit_balances')
    op.drop_index('ix_credit_ledger_entries_shipment_id', table_name='credit_ledger_entries')
    op.drop_index('ix_credit_ledger_entries_customer_stripe_id', table_name='credit_ledger_entries')
    op.drop_table('credit_ledger_entries')
    op.drop_index('uq_shipments_one_open_per_customer_store', table_name='shipments')
    op.drop_index('ix_shipments_customer_stripe_id', table_name='shipments')
    op.drop_index('ix_shipments_store_id', table_name='shipments')
    op.drop_index('ix_shipments_shipment_id', table_name='shipments')
    op.drop_table('shipments')
    op.drop_index('ix_carts_payment_id', table_name='carts')
    op.drop_index('ix_carts_customer_stripe_id', table_name='carts')
    op.drop_index('ix_carts_store_id', table_name='carts')
    op.drop_table('carts')
    op.drop_index('ix_stock_product_stripe_id', table_name='stock')
    op.drop_index('ix_stock_store_id', table_name='stock')
    op.drop_table('stock')
    op.drop_index('ix_stores_clerk_id', table_name='stores')
    op.drop_index('ix_stores_slug', table_name='stores')
    op.drop_table('stores')

    # Enum types are not dropped with their tables on PostgreSQL
    for enum_name in ('webhook_provider', 'saga_step_status', 'saga_status', 'credit_reason'):
        op.execute(f"DROP TYPE IF EXISTS {enum_name}")

"""
Alembic migration: Initial checkout schema.

Creates the products, orders, order_items, payments, and vouchers tables
together with their enum types, indexes, and check constraints. The partial
unique index on payments allows at most one pending or completed payment per
order and method.

Revision ID: 001
Revises:
Create Date: 2026-10-18 10:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


order_status = postgresql.ENUM(
    'pending', 'confirmed', 'shipped', 'delivered', 'cancelled',
    name='order_status',
    create_type=False,
)
payment_method = postgresql.ENUM(
    'cod', 'gateway',
    name='payment_method',
    create_type=False,
)
payment_status = postgresql.ENUM(
    'pending', 'completed', 'failed', 'cancelled', 'refunded',
    name='payment_status',
    create_type=False,
)
discount_type = postgresql.ENUM(
    'percentage', 'fixed',
    name='discount_type',
    create_type=False,
)

ENUM_TYPES = (order_status, payment_method, payment_status, discount_type)


def _timestamps() -> list:
    return [
        sa.Column(
            'created_at',
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text('CURRENT_TIMESTAMP'),
            comment='Timestamp when record was created',
        ),
        sa.Column(
            'updated_at',
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text('CURRENT_TIMESTAMP'),
            comment='Timestamp when record was last updated',
        ),
    ]


def _money(name: str, comment: str, nullable: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.Numeric(precision=12, scale=2),
        nullable=nullable,
        comment=comment,
    )


def upgrade() -> None:
    """
    Upgrade database schema to the initial checkout model.

    Enum types are created once up front because payment_method is shared by
    the orders and payments tables.
    """
    bind = op.get_bind()
    for enum_type in ENUM_TYPES:
        enum_type.create(bind, checkfirst=True)

    # Create products table
    op.create_table(
        'products',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False,
                  comment='Unique identifier for the record'),
        sa.Column('name', sa.String(length=255), nullable=False, comment='Product name'),
        _money('price', 'Current unit price'),
        sa.Column('is_active', sa.Boolean(), nullable=False,
                  comment='Whether the product can be ordered'),
        sa.Column('stock_quantity', sa.Integer(), nullable=True,
                  comment='Units on hand (null when stock is not tracked)'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_products'),
        sa.CheckConstraint('price >= 0', name='ck_products_price_non_negative'),
        sa.CheckConstraint(
            'stock_quantity IS NULL OR stock_quantity >= 0',
            name='ck_products_stock_non_negative',
        ),
        comment='Catalog products available for checkout',
    )
    op.create_index('ix_products_is_active', 'products', ['is_active'])

    # Create orders table
    op.create_table(
        'orders',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False,
                  comment='Unique identifier for the record'),
        sa.Column('customer_id', postgresql.UUID(as_uuid=True), nullable=True,
                  comment='Ordering customer (null for guest checkout)'),
        sa.Column('status', order_status, nullable=False, comment='Order lifecycle status'),
        sa.Column('payment_method', payment_method, nullable=False,
                  comment='Chosen payment method'),
        _money('subtotal', 'Sum of line totals'),
        _money('shipping_fee', 'Shipping fee'),
        _money('discount_amount', 'Voucher discount applied'),
        _money('total', 'Amount due'),
        sa.Column('voucher_code', sa.String(length=50), nullable=True,
                  comment='Voucher code applied at checkout'),
        sa.Column('voucher_discount_type', sa.String(length=20), nullable=True,
                  comment='Discount type snapshot'),
        _money('voucher_discount_value', 'Discount value snapshot', nullable=True),
        sa.Column('customer_name', sa.String(length=255), nullable=False,
                  comment='Contact name'),
        sa.Column('customer_phone', sa.String(length=32), nullable=False,
                  comment='Contact phone'),
        sa.Column('customer_email', sa.String(length=255), nullable=True,
                  comment='Contact email'),
        sa.Column('delivery_address', postgresql.JSONB(astext_type=sa.Text()),
                  nullable=False, comment='Delivery address snapshot'),
        sa.Column('notes', sa.Text(), nullable=True, comment='Customer notes'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_orders'),
        sa.CheckConstraint('subtotal >= 0', name='ck_orders_subtotal_non_negative'),
        sa.CheckConstraint('shipping_fee >= 0', name='ck_orders_shipping_non_negative'),
        sa.CheckConstraint('discount_amount >= 0', name='ck_orders_discount_non_negative'),
        sa.CheckConstraint('total >= 0', name='ck_orders_total_non_negative'),
        comment='Customer orders with pricing and voucher snapshots',
    )
    op.create_index('ix_orders_customer_id', 'orders', ['customer_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_voucher_code', 'orders', ['voucher_code'])
    op.create_index('ix_orders_customer_created', 'orders', ['customer_id', 'created_at'])
    op.create_index('ix_orders_voucher_status', 'orders', ['voucher_code', 'status'])

    # Create order_items table
    op.create_table(
        'order_items',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False,
                  comment='Unique identifier for the record'),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=False,
                  comment='Owning order'),
        sa.Column('product_id', postgresql.UUID(as_uuid=True), nullable=False,
                  comment='Ordered product'),
        sa.Column('product_name', sa.String(length=255), nullable=False,
                  comment='Product name snapshot'),
        sa.Column('quantity', sa.Integer(), nullable=False, comment='Units ordered'),
        _money('unit_price', 'Unit price snapshot'),
        _money('line_total', 'unit_price * quantity'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_order_items'),
        sa.ForeignKeyConstraint(
            ['order_id'],
            ['orders.id'],
            name='fk_order_items_order_id',
            ondelete='CASCADE',
        ),
        sa.ForeignKeyConstraint(
            ['product_id'],
            ['products.id'],
            name='fk_order_items_product_id',
            ondelete='RESTRICT',
        ),
        sa.CheckConstraint('quantity > 0', name='ck_order_items_quantity_positive'),
        sa.CheckConstraint('unit_price >= 0', name='ck_order_items_unit_price_non_negative'),
        comment='Order lines with catalog price snapshots',
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])
    op.create_index('ix_order_items_product_id', 'order_items', ['product_id'])

    # Create payments table
    op.create_table(
        'payments',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False,
                  comment='Unique identifier for the record'),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=False,
                  comment='Owning order'),
        sa.Column('method', payment_method, nullable=False, comment='Payment method'),
        _money('amount', 'Amount due'),
        sa.Column('currency', sa.String(length=3), nullable=False,
                  comment='Currency code (ISO 4217)'),
        sa.Column('status', payment_status, nullable=False, comment='Current payment status'),
        sa.Column('correlation_token', sa.String(length=500), nullable=True,
                  comment='Merchant reference sent to the gateway'),
        sa.Column('payment_url', sa.String(length=1000), nullable=True,
                  comment='Hosted payment page URL'),
        sa.Column('gateway_reference', sa.String(length=255), nullable=True,
                  comment='Gateway transaction reference'),
        sa.Column('gateway_product_code', sa.String(length=255), nullable=True,
                  comment='Gateway session/product code'),
        sa.Column('gateway_payment_method', sa.String(length=100), nullable=True,
                  comment='Payment channel reported by the gateway'),
        sa.Column('gateway_voucher', sa.String(length=100), nullable=True,
                  comment='Cash voucher issued by the gateway'),
        sa.Column('callback_payload', postgresql.JSONB(astext_type=sa.Text()),
                  nullable=True, comment='Last applied callback payload'),
        sa.Column('matched_by', sa.String(length=50), nullable=True,
                  comment='Callback matching strategy'),
        sa.Column('needs_review', sa.Boolean(), nullable=False,
                  server_default=sa.text('false'),
                  comment='Flagged for manual reconciliation'),
        sa.Column('failure_reason', sa.Text(), nullable=True,
                  comment='Why the payment failed or was cancelled'),
        sa.Column('completed_at', sa.TIMESTAMP(timezone=True), nullable=True,
                  comment='When the payment was confirmed'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_payments'),
        sa.ForeignKeyConstraint(
            ['order_id'],
            ['orders.id'],
            name='fk_payments_order_id',
            ondelete='CASCADE',
        ),
        sa.CheckConstraint('amount >= 0', name='ck_payments_amount_non_negative'),
        sa.CheckConstraint("currency ~ '^[A-Z]{3}$'", name='ck_payments_currency_format'),
        comment='Payment attempts with gateway correlation fields',
    )
    op.create_index('ix_payments_order_id', 'payments', ['order_id'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index('ix_payments_gateway_reference', 'payments', ['gateway_reference'])
    op.create_index('ix_payments_gateway_product_code', 'payments', ['gateway_product_code'])
    op.create_index('ix_payments_order_status', 'payments', ['order_id', 'status'])
    op.create_index(
        'ix_payments_method_status_created',
        'payments',
        ['method', 'status', 'created_at'],
    )
    op.create_index(
        'uq_payments_order_method_active',
        'payments',
        ['order_id', 'method'],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'completed')"),
    )

    # Create vouchers table
    op.create_table(
        'vouchers',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False,
                  comment='Unique identifier for the record'),
        sa.Column('code', sa.String(length=50), nullable=False,
                  comment='Upper-case voucher code'),
        sa.Column('discount_type', discount_type, nullable=False,
                  comment='Percentage or fixed discount'),
        _money('discount_value', 'Percent (0-100] or fixed amount'),
        sa.Column('customer_id', postgresql.UUID(as_uuid=True), nullable=False,
                  comment='Owning customer'),
        sa.Column('phone_number', sa.String(length=32), nullable=True,
                  comment='Owner phone number'),
        sa.Column('is_active', sa.Boolean(), nullable=False,
                  comment='Whether the voucher may be used'),
        sa.Column('is_used', sa.Boolean(), nullable=False,
                  comment='Whether the voucher has been redeemed'),
        sa.Column('used_at', sa.TIMESTAMP(timezone=True), nullable=True,
                  comment='When the voucher was redeemed'),
        sa.Column('used_order_id', postgresql.UUID(as_uuid=True), nullable=True,
                  comment='Order that redeemed the voucher'),
        sa.Column('expires_at', sa.TIMESTAMP(timezone=True), nullable=True,
                  comment='Optional expiry'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_vouchers'),
        sa.CheckConstraint('discount_value > 0', name='ck_vouchers_value_positive'),
        sa.CheckConstraint(
            "discount_type <> 'percentage' OR discount_value <= 100",
            name='ck_vouchers_percentage_max',
        ),
        sa.CheckConstraint(
            'is_used = false OR used_order_id IS NOT NULL',
            name='ck_vouchers_used_has_order',
        ),
        comment='Single-use customer discount vouchers',
    )
    op.create_index('ix_vouchers_code', 'vouchers', ['code'], unique=True)
    op.create_index('ix_vouchers_customer_id', 'vouchers', ['customer_id'])
    op.create_index('ix_vouchers_is_used', 'vouchers', ['is_used'])
    op.create_index(
        'ix_vouchers_customer_usable',
        'vouchers',
        ['customer_id', 'is_active', 'is_used'],
    )


def downgrade() -> None:
    """Drop the checkout tables and their enum types."""
    op.drop_table('vouchers')
    op.drop_table('payments')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('products')

    bind = op.get_bind()
    for enum_type in reversed(ENUM_TYPES):
        enum_type.drop(bind, checkfirst=True)

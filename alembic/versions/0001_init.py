from alembic import op
import sqlalchemy as sa

revision = '0001_init'
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        'products',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('is_published', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now())
    )
    op.create_table(
        'product_variants',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('product_id', sa.Integer, sa.ForeignKey('products.id'), nullable=False, index=True),
        sa.Column('sku', sa.String(50), nullable=False, unique=True),
        sa.Column('name', sa.String(100), nullable=True),
        sa.Column('value', sa.String(100), nullable=True),
        sa.Column('price', sa.Numeric(10,2), nullable=False),
        sa.Column('stock', sa.Integer, nullable=False, server_default='0')
    )
    op.create_table(
        'stock_movements',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('variant_id', sa.Integer, sa.ForeignKey('product_variants.id'), nullable=False, index=True),
        sa.Column('movement_type', sa.String(20), nullable=False),
        sa.Column('quantity', sa.Integer, nullable=False),
        sa.Column('previous_stock', sa.Integer, nullable=False),
        sa.Column('new_stock', sa.Integer, nullable=False),
        sa.Column('reference_type', sa.String(20), nullable=False),
        sa.Column('reference_id', sa.Integer, nullable=False),
        sa.Column('created_by', sa.Integer, nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=True)
    )
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_number', sa.String(50), nullable=False, unique=True, index=True),
        sa.Column('buyer_id', sa.Integer, nullable=False, index=True),
        sa.Column('status', sa.String(30), nullable=False),
        sa.Column('payment_method', sa.String(20), nullable=False),
        sa.Column('customer_first_name', sa.String(120), nullable=True),
        sa.Column('customer_last_name', sa.String(120), nullable=True),
        sa.Column('customer_email', sa.String(191), nullable=True),
        sa.Column('customer_phone', sa.String(32), nullable=True),
        sa.Column('shipping_address', sa.Text, nullable=True),
        sa.Column('shipping_city', sa.String(120), nullable=True),
        sa.Column('shipping_country', sa.String(120), nullable=True),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('subtotal_amount', sa.Numeric(12,2), nullable=False),
        sa.Column('shipping_amount', sa.Numeric(12,2), nullable=False, server_default='0'),
        sa.Column('discount_amount', sa.Numeric(12,2), nullable=False, server_default='0'),
        sa.Column('total_amount', sa.Numeric(12,2), nullable=False),
        sa.Column('payment_intent_id', sa.Integer, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=True)
    )
    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('product_id', sa.Integer, sa.ForeignKey('products.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('variant_id', sa.Integer, sa.ForeignKey('product_variants.id'), nullable=True),
        sa.Column('quantity', sa.Integer, nullable=False),
        sa.Column('price', sa.Numeric(10,2), nullable=False),
        sa.Column('total', sa.Numeric(12,2), nullable=False),
        sa.Column('variant_name', sa.String(100), nullable=True),
        sa.Column('variant_value', sa.String(100), nullable=True)
    )
    op.create_table(
        'payment_intents',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('buyer_id', sa.Integer, nullable=False, index=True),
        sa.Column('checkout_request_id', sa.String(100), nullable=False, unique=True, index=True),
        sa.Column('merchant_request_id', sa.String(100), nullable=False),
        sa.Column('phone', sa.String(20), nullable=False),
        sa.Column('amount', sa.Numeric(12,2), nullable=False),
        sa.Column('method', sa.String(20), nullable=False, server_default='MPESA'),
        sa.Column('status', sa.String(20), nullable=False, server_default='PENDING', index=True),
        sa.Column('payload', sa.JSON, nullable=False),
        # At most one order per intent
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=True, unique=True),
        sa.Column('created_at', sa.DateTime, nullable=True),
        sa.Column('updated_at', sa.DateTime, nullable=True)
    )

def downgrade():
    op.drop_table('payment_intents')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('stock_movements')
    op.drop_table('product_variants')
    op.drop_table('products')

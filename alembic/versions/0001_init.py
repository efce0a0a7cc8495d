from alembic import op
import sqlalchemy as sa

revision = '0001_init'
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(12, 2)


def upgrade():
    op.create_table(
        'clients',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('name', sa.String(200), nullable=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('phone', sa.String(50), nullable=True),
        sa.Column('address', sa.JSON, nullable=True),
        sa.Column('metadata', sa.JSON, nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
    )
    op.create_index('uq_clients_email', 'clients', ['email'], unique=True,
                    postgresql_where=sa.text('email IS NOT NULL'), sqlite_where=sa.text('email IS NOT NULL'))
    op.create_index('uq_clients_phone', 'clients', ['phone'], unique=True,
                    postgresql_where=sa.text('phone IS NOT NULL'), sqlite_where=sa.text('phone IS NOT NULL'))

    op.create_table(
        'orders',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('payment_reference', sa.String(255), nullable=False),
        sa.Column('order_number', sa.String(50), nullable=True, unique=True),
        sa.Column('status', sa.String(30), nullable=False),
        sa.Column('subtotal', MONEY, nullable=False),
        sa.Column('shipping', MONEY, nullable=False),
        sa.Column('total', MONEY, nullable=False),
        sa.Column('refunded_total', MONEY, nullable=False),
        sa.Column('legacy_refund_amount', MONEY, nullable=True),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('shipping_address', sa.JSON, nullable=True),
        sa.Column('billing_address', sa.JSON, nullable=True),
        sa.Column('client_id', sa.Integer, sa.ForeignKey('clients.id', ondelete='SET NULL'), nullable=True),
        sa.Column('webhook_event_id', sa.String(255), nullable=True),
        sa.Column('failure_reason', sa.Text, nullable=True),
        sa.Column('paid_at', sa.DateTime, nullable=True),
        sa.Column('failed_at', sa.DateTime, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
        sa.Column('version', sa.Integer, nullable=False),
    )
    op.create_index('ix_orders_payment_reference', 'orders', ['payment_reference'], unique=True)
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_client_id', 'orders', ['client_id'])

    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('position', sa.Integer, nullable=False),
        sa.Column('product_id', sa.String(120), nullable=False),
        sa.Column('source', sa.String(20), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('quantity', sa.Integer, nullable=False),
        sa.Column('unit_price', MONEY, nullable=False),
        sa.Column('line_total', MONEY, nullable=False),
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])

    op.create_table(
        'order_audit_entries',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('kind', sa.String(50), nullable=False),
        sa.Column('data', sa.JSON, nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=False),
    )
    op.create_index('ix_order_audit_entries_order_id', 'order_audit_entries', ['order_id'])
    op.create_index('ix_order_audit_entries_kind', 'order_audit_entries', ['kind'])

    op.create_table(
        'refund_entries',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('refund_id', sa.String(255), nullable=True),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('reason', sa.Text, nullable=True),
        sa.Column('idempotency_key', sa.String(255), nullable=False),
        sa.Column('gateway_succeeded', sa.Boolean, nullable=True),
        sa.Column('provider_refund_id', sa.String(255), nullable=True),
        sa.Column('gateway_response', sa.JSON, nullable=True),
        sa.Column('gateway_error', sa.Text, nullable=True),
        sa.Column('refunded_at', sa.DateTime, nullable=False),
        sa.UniqueConstraint('order_id', 'idempotency_key', name='uq_refund_entries_order_key'),
    )
    op.create_index('ix_refund_entries_order_id', 'refund_entries', ['order_id'])

    op.create_table(
        'coffees',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('slug', sa.String(120), nullable=True, unique=True),
        sa.Column('stock', sa.Integer, nullable=False),
        sa.Column('total_stock', sa.Integer, nullable=False),
        sa.CheckConstraint('stock >= 0', name='ck_coffees_stock_non_negative'),
        sa.CheckConstraint('total_stock >= 0', name='ck_coffees_total_stock_non_negative'),
    )
    op.create_table(
        'coffee_variants',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('coffee_id', sa.String(64), sa.ForeignKey('coffees.id'), nullable=True),
        sa.Column('sku', sa.String(64), nullable=False, unique=True),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('stock', sa.Integer, nullable=False),
        sa.CheckConstraint('stock >= 0', name='ck_coffee_variants_stock_non_negative'),
    )
    op.create_index('ix_coffee_variants_coffee_id', 'coffee_variants', ['coffee_id'])
    op.create_table(
        'equipment',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('slug', sa.String(120), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('total_stock', sa.Integer, nullable=False),
        sa.CheckConstraint('total_stock >= 0', name='ck_equipment_stock_non_negative'),
    )
    op.create_index('ix_equipment_slug', 'equipment', ['slug'], unique=True)

    op.create_table(
        'invoices',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=False, unique=True),
        sa.Column('invoice_number', sa.String(50), nullable=False, unique=True),
        sa.Column('order_number', sa.String(50), nullable=True),
        sa.Column('payment_reference', sa.String(255), nullable=False),
        sa.Column('webhook_event_id', sa.String(255), nullable=True),
        sa.Column('items', sa.JSON, nullable=False),
        sa.Column('subtotal', MONEY, nullable=False),
        sa.Column('shipping', MONEY, nullable=False),
        sa.Column('total', MONEY, nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('client', sa.JSON, nullable=True),
        sa.Column('shipping_address', sa.JSON, nullable=True),
        sa.Column('billing_address', sa.JSON, nullable=True),
        sa.Column('recipient_email', sa.String(255), nullable=True),
        sa.Column('paid_at', sa.DateTime, nullable=True),
        sa.Column('document', sa.LargeBinary, nullable=True),
        sa.Column('sent', sa.Boolean, nullable=False),
        sa.Column('sent_at', sa.DateTime, nullable=True),
        sa.Column('send_error', sa.Text, nullable=True),
        sa.Column('admin_notified', sa.Boolean, nullable=False),
        sa.Column('admin_notified_at', sa.DateTime, nullable=True),
        sa.Column('admin_notification_error', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
    )


def downgrade():
    op.drop_table('invoices')
    op.drop_index('ix_equipment_slug', table_name='equipment')
    op.drop_table('equipment')
    op.drop_index('ix_coffee_variants_coffee_id', table_name='coffee_variants')
    op.drop_table('coffee_variants')
    op.drop_table('coffees')
    op.drop_index('ix_refund_entries_order_id', table_name='refund_entries')
    op.drop_table('refund_entries')
    op.drop_index('ix_order_audit_entries_kind', table_name='order_audit_entries')
    op.drop_index('ix_order_audit_entries_order_id', table_name='order_audit_entries')
    op.drop_table('order_audit_entries')
    op.drop_index('ix_order_items_order_id', table_name='order_items')
    op.drop_table('order_items')
    op.drop_index('ix_orders_client_id', table_name='orders')
    op.drop_index('ix_orders_status', table_name='orders')
    op.drop_index('ix_orders_payment_reference', table_name='orders')
    op.drop_table('orders')
    op.drop_index('uq_clients_phone', table_name='clients')
    op.drop_index('uq_clients_email', table_name='clients')
    op.drop_table('clients')

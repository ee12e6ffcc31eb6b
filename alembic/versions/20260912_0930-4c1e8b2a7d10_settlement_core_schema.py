"""settlement_core_schema

Revision ID: 4c1e8b2a7d10
Revises:
Create Date: 2026-09-12 09:30:11.204518

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '4c1e8b2a7d10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _money(name: str, nullable: bool = False, **kwargs) -> sa.Column:
    return sa.Column(name, sa.Numeric(precision=15, scale=2), nullable=nullable, **kwargs)


def _timestamps() -> list:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='PENDING', comment='订单状态'),
        _money('total', comment='订单总额（含服务费）'),
        _money('subtotal', server_default='0', comment='商品小计'),
        _money('service_fee', server_default='0', comment='服务费总额'),
        sa.Column('customer_email', sa.String(length=255), nullable=True),
        sa.Column('customer_name', sa.String(length=255), nullable=True),
        sa.Column('customer_phone', sa.String(length=40), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_orders_id', 'orders', ['id'])
    op.create_index('ix_orders_status', 'orders', ['status'])

    op.create_table(
        'suppliers',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('phone', sa.String(length=40), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('payout_subaccount_code', sa.String(length=64), nullable=True, comment='网关分账子账户'),
        sa.Column('recipient_code', sa.String(length=64), nullable=True, comment='网关转账收款人'),
        sa.Column('bank_code', sa.String(length=16), nullable=True),
        sa.Column('account_number', sa.String(length=32), nullable=True),
        sa.Column('account_name', sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_suppliers_id', 'suppliers', ['id'])

    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('variant_id', sa.Integer(), nullable=True),
        sa.Column('title', sa.String(length=255), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        _money('unit_price', comment='客户单价'),
        _money('line_total', nullable=True, comment='行合计（可空，空则单价×数量）'),
        sa.Column('chosen_supplier_id', sa.Integer(), nullable=True),
        _money('chosen_supplier_unit_price', nullable=True, comment='锁定的供应商单价'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['chosen_supplier_id'], ['suppliers.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_order_items_id', 'order_items', ['id'])
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])
    op.create_index('ix_order_items_product_id', 'order_items', ['product_id'])
    op.create_index('ix_order_items_chosen_supplier_id', 'order_items', ['chosen_supplier_id'])

    op.create_table(
        'supplier_offers',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('supplier_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('variant_id', sa.Integer(), nullable=True),
        _money('price'),
        sa.Column('in_stock', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.ForeignKeyConstraint(['supplier_id'], ['suppliers.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_supplier_offers_id', 'supplier_offers', ['id'])
    op.create_index('ix_supplier_offers_supplier_id', 'supplier_offers', ['supplier_id'])
    op.create_index('ix_supplier_offers_product_variant', 'supplier_offers', ['product_id', 'variant_id'])

    op.create_table(
        'order_activities',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('kind', sa.String(length=40), nullable=False, comment='流水类型'),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('meta', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_order_activities_id', 'order_activities', ['id'])
    op.create_index('ix_order_activities_order_id', 'order_activities', ['order_id'])
    op.create_index('ix_order_activities_order_kind', 'order_activities', ['order_id', 'kind'])

    op.create_table(
        'order_comms',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('supplier_id', sa.Integer(), nullable=True),
        sa.Column('payment_id', sa.Integer(), nullable=True),
        sa.Column('reason', sa.String(length=40), nullable=False),
        _money('amount', server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_order_comms_id', 'order_comms', ['id'])
    op.create_index('ix_order_comms_order_id', 'order_comms', ['order_id'])
    op.create_index('ix_order_comms_order_reason', 'order_comms', ['order_id', 'reason'])

    op.create_table(
        'settings',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('key', sa.String(length=100), nullable=False),
        sa.Column('value', sa.Text(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('key', name='uq_settings_key'),
    )

    op.create_table(
        'payment_intents',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False, comment='订单ID'),
        sa.Column('reference', sa.String(length=64), nullable=False, comment='支付引用（网关交易引用）'),
        _money('amount', comment='支付金额'),
        _money('fee_amount', server_default='0', comment='网关手续费'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='PENDING', comment='PENDING/PAID/FAILED/CANCELED'),
        sa.Column('channel', sa.String(length=32), nullable=False, server_default='paystack', comment='支付渠道'),
        sa.Column('provider', sa.String(length=32), nullable=False, server_default='paystack', comment='支付提供商'),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True, comment='支付完成时间'),
        *_timestamps(),
        sa.Column('provider_payload', sa.JSON(), nullable=True, comment='网关响应快照'),
        sa.Column('init_payload', sa.JSON(), nullable=True, comment='收银台初始化参数'),
        sa.Column('receipt_no', sa.String(length=40), nullable=True, comment='收据编号'),
        sa.Column('receipt_issued_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('receipt_data', sa.JSON(), nullable=True, comment='收据快照'),
        sa.Column('breakdown', sa.JSON(), nullable=True, comment='按供应商的分配快照'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('reference'),
        sa.UniqueConstraint('receipt_no'),
    )
    op.create_index('ix_payment_intents_id', 'payment_intents', ['id'])
    op.create_index('ix_payment_intents_order_id', 'payment_intents', ['order_id'])
    op.create_index('ix_payment_intents_status', 'payment_intents', ['status'])
    op.create_index('ix_payment_intents_created_at', 'payment_intents', ['created_at'])
    op.create_index('ix_payment_intents_order_status', 'payment_intents', ['order_id', 'status'])
    # 同一订单至多一个 PAID 意向
    op.create_index(
        'uq_payment_intents_order_paid',
        'payment_intents',
        ['order_id'],
        unique=True,
        postgresql_where=sa.text("status = 'PAID'"),
        sqlite_where=sa.text("status = 'PAID'"),
    )

    op.create_table(
        'finalization_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('payment_id', sa.Integer(), nullable=False, comment='支付意向ID'),
        sa.Column('event_type', sa.String(length=40), nullable=False, comment='事件类型'),
        sa.Column('data', sa.JSON(), nullable=True, comment='事件数据'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.ForeignKeyConstraint(['payment_id'], ['payment_intents.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('payment_id', 'event_type', name='uq_finalization_events_payment_type'),
    )
    op.create_index('ix_finalization_events_id', 'finalization_events', ['id'])
    op.create_index('ix_finalization_events_payment_id', 'finalization_events', ['payment_id'])

    op.create_table(
        'purchase_orders',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('supplier_id', sa.Integer(), nullable=False),
        sa.Column('supplier_order_ref', sa.String(length=32), nullable=False, comment='供应商采购单号 SPO-XXXX-XXXX'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='CREATED'),
        _money('subtotal', server_default='0', comment='客户侧小计'),
        _money('supplier_amount', server_default='0', comment='应付供应商'),
        _money('platform_fee', server_default='0', comment='平台差价'),
        sa.Column('payout_status', sa.String(length=20), nullable=False, server_default='HELD'),
        *_timestamps(),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['supplier_id'], ['suppliers.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('supplier_order_ref'),
        sa.UniqueConstraint('order_id', 'supplier_id', name='uq_purchase_orders_order_supplier'),
    )
    op.create_index('ix_purchase_orders_id', 'purchase_orders', ['id'])
    op.create_index('ix_purchase_orders_order_id', 'purchase_orders', ['order_id'])
    op.create_index('ix_purchase_orders_supplier_id', 'purchase_orders', ['supplier_id'])

    op.create_table(
        'purchase_order_items',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('purchase_order_id', sa.Integer(), nullable=False),
        sa.Column('order_item_id', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['purchase_order_id'], ['purchase_orders.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['order_item_id'], ['order_items.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('purchase_order_id', 'order_item_id', name='uq_purchase_order_items_link'),
    )
    op.create_index('ix_purchase_order_items_purchase_order_id', 'purchase_order_items', ['purchase_order_id'])

    op.create_table(
        'supplier_payment_allocations',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('payment_id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('supplier_id', sa.Integer(), nullable=False),
        sa.Column('purchase_order_id', sa.Integer(), nullable=False),
        _money('amount'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='HELD', comment='HELD/PAID/FAILED/REVERSED'),
        sa.Column('transfer_reference', sa.String(length=100), nullable=True),
        sa.Column('released_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('meta', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['payment_id'], ['payment_intents.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['purchase_order_id'], ['purchase_orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('payment_id', 'purchase_order_id', name='uq_allocations_payment_po'),
    )
    op.create_index('ix_supplier_payment_allocations_id', 'supplier_payment_allocations', ['id'])
    op.create_index('ix_supplier_payment_allocations_payment_id', 'supplier_payment_allocations', ['payment_id'])
    op.create_index('ix_supplier_payment_allocations_order_id', 'supplier_payment_allocations', ['order_id'])
    op.create_index('ix_supplier_payment_allocations_supplier_id', 'supplier_payment_allocations', ['supplier_id'])

    op.create_table(
        'supplier_ledger_entries',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('supplier_id', sa.Integer(), nullable=False),
        sa.Column('entry_type', sa.String(length=10), nullable=False, comment='CREDIT/DEBIT'),
        _money('amount'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='NGN'),
        sa.Column('reference_type', sa.String(length=40), nullable=False),
        sa.Column('reference_id', sa.String(length=64), nullable=False),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_supplier_ledger_entries_id', 'supplier_ledger_entries', ['id'])
    op.create_index('ix_supplier_ledger_entries_supplier_id', 'supplier_ledger_entries', ['supplier_id'])
    op.create_index(
        'ix_ledger_supplier_reference',
        'supplier_ledger_entries',
        ['supplier_id', 'reference_type', 'reference_id', 'entry_type'],
    )

    op.create_table(
        'profit_breakdowns',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('payment_id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        _money('amount_paid'),
        _money('cogs'),
        _money('estimated_cogs', server_default='0'),
        _money('gateway_fee', server_default='0'),
        _money('comms_cost', server_default='0'),
        _money('base_fee', server_default='0'),
        _money('profit'),
        sa.Column('mode', sa.String(length=16), nullable=False),
        sa.Column('lines', sa.JSON(), nullable=True),
        sa.Column('computed_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.ForeignKeyConstraint(['payment_id'], ['payment_intents.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('payment_id'),
    )
    op.create_index('ix_profit_breakdowns_id', 'profit_breakdowns', ['id'])
    op.create_index('ix_profit_breakdowns_order_id', 'profit_breakdowns', ['order_id'])


def downgrade() -> None:
    op.drop_table('profit_breakdowns')
    op.drop_table('supplier_ledger_entries')
    op.drop_table('supplier_payment_allocations')
    op.drop_table('purchase_order_items')
    op.drop_table('purchase_orders')
    op.drop_table('finalization_events')
    op.drop_index('uq_payment_intents_order_paid', table_name='payment_intents')
    op.drop_table('payment_intents')
    op.drop_table('settings')
    op.drop_table('order_comms')
    op.drop_table('order_activities')
    op.drop_table('supplier_offers')
    op.drop_table('order_items')
    op.drop_table('suppliers')
    op.drop_table('orders')

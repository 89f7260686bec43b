"""create_payment_tables

Revision ID: 3c1f6a2b9d40
Revises:
Create Date: 2025-10-17 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3c1f6a2b9d40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'sales_orders',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_ref', sa.String(length=64), nullable=False, comment='订单引用'),
        sa.Column('order_no', sa.String(length=64), nullable=True, comment='订单编号'),
        sa.Column('customer_ref', sa.String(length=64), nullable=True, comment='客户引用'),
        sa.Column('customer_email', sa.String(length=255), nullable=True, comment='客户邮箱'),
        sa.Column('customer_name', sa.String(length=255), nullable=True, comment='客户名称'),
        sa.Column('gateway_customer_id', sa.String(length=255), nullable=True, comment='网关客户ID'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='usd', comment='货币代码'),
        sa.Column('total_amount', sa.BigInteger(), nullable=False, server_default='0', comment='订单总额'),
        sa.Column('paid_amount', sa.BigInteger(), nullable=False, server_default='0', comment='已付金额'),
        sa.Column('balance_due', sa.BigInteger(), nullable=False, server_default='0', comment='待付余额'),
        sa.Column('overpaid_amount', sa.BigInteger(), nullable=False, server_default='0', comment='超付金额'),
        sa.Column('payment_status', sa.String(length=20), nullable=False, server_default='unpaid',
                  comment='支付状态: unpaid/partially_paid/paid/refunded'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_ref', name='uq_sales_orders_order_ref'),
    )
    op.create_index('ix_sales_orders_id', 'sales_orders', ['id'], unique=False)

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_ref', sa.String(length=64), nullable=False, comment='订单引用'),
        sa.Column('customer_ref', sa.String(length=64), nullable=True, comment='客户引用'),
        sa.Column('amount', sa.BigInteger(), nullable=False, comment='支付金额（最小货币单位）'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='usd', comment='货币代码 ISO-4217（小写）'),
        sa.Column('refunded_amount', sa.BigInteger(), nullable=False, server_default='0', comment='已退款金额（最小货币单位）'),
        sa.Column('refund_count', sa.Integer(), nullable=False, server_default='0', comment='退款次数'),
        sa.Column('method', sa.String(length=20), nullable=False, comment='支付方式: payment_link/saved_card/card'),
        sa.Column('status', sa.String(length=30), nullable=False, server_default='pending',
                  comment='支付状态: pending/succeeded/failed/cancelled/refunded/partially_refunded'),
        sa.Column('payment_intent_id', sa.String(length=255), nullable=True, comment='PaymentIntent ID'),
        sa.Column('charge_id', sa.String(length=255), nullable=True, comment='Charge ID'),
        sa.Column('customer_id', sa.String(length=255), nullable=True, comment='网关客户ID'),
        sa.Column('payment_method_id', sa.String(length=255), nullable=True, comment='网关支付方式ID'),
        sa.Column('payment_link_id', sa.String(length=255), nullable=True, comment='Payment Link ID'),
        sa.Column('payment_link_url', sa.String(length=1024), nullable=True, comment='支付链接URL'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True, comment='支付链接过期时间'),
        sa.Column('card_last4', sa.String(length=4), nullable=True, comment='卡号后四位'),
        sa.Column('card_brand', sa.String(length=32), nullable=True, comment='卡品牌'),
        sa.Column('error_message', sa.Text(), nullable=True, comment='失败原因'),
        sa.Column('receipt_status', sa.String(length=16), nullable=False, server_default='none',
                  comment='收据状态: none/sending/sent/failed'),
        sa.Column('receipt_sent_at', sa.DateTime(timezone=True), nullable=True, comment='收据发送时间'),
        sa.Column('refund_claimed_at', sa.DateTime(timezone=True), nullable=True, comment='退款认领时间'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0', comment='版本号'),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='扩展元数据'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.PrimaryKeyConstraint('id'),
        # 网关标识唯一，webhook 与 API 并发插入时由数据库裁决
        sa.UniqueConstraint('payment_intent_id', name='uq_payments_payment_intent_id'),
        sa.UniqueConstraint('charge_id', name='uq_payments_charge_id'),
        sa.UniqueConstraint('payment_link_id', name='uq_payments_payment_link_id'),
    )
    op.create_index('ix_payments_id', 'payments', ['id'], unique=False)
    op.create_index('ix_payments_order_ref', 'payments', ['order_ref'], unique=False)
    op.create_index('ix_payments_status', 'payments', ['status'], unique=False)
    op.create_index('ix_payments_order_method_status', 'payments', ['order_ref', 'method', 'status'], unique=False)
    op.create_index('ix_payments_receipt_status', 'payments', ['receipt_status'], unique=False)
    op.create_index('ix_payments_created_at', 'payments', ['created_at'], unique=False)

    op.create_table(
        'processed_webhook_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('provider', sa.String(length=20), nullable=False, server_default='stripe', comment='支付提供商'),
        sa.Column('event_id', sa.String(length=255), nullable=False, comment='网关事件ID'),
        sa.Column('event_type', sa.String(length=100), nullable=False, comment='事件类型'),
        sa.Column('payment_id', sa.Integer(), nullable=True, comment='关联支付ID'),
        sa.Column('outcome', sa.String(length=20), nullable=False, server_default='applied',
                  comment='处理结果: applied/noop/rejected'),
        sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='接收时间'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('event_id', name='uq_processed_webhook_events_event_id'),
    )
    op.create_index('ix_processed_webhook_events_id', 'processed_webhook_events', ['id'], unique=False)
    op.create_index('ix_processed_webhook_events_payment_id', 'processed_webhook_events', ['payment_id'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_processed_webhook_events_payment_id', table_name='processed_webhook_events')
    op.drop_index('ix_processed_webhook_events_id', table_name='processed_webhook_events')
    op.drop_table('processed_webhook_events')

    op.drop_index('ix_payments_created_at', table_name='payments')
    op.drop_index('ix_payments_receipt_status', table_name='payments')
    op.drop_index('ix_payments_order_method_status', table_name='payments')
    op.drop_index('ix_payments_status', table_name='payments')
    op.drop_index('ix_payments_order_ref', table_name='payments')
    op.drop_index('ix_payments_id', table_name='payments')
    op.drop_table('payments')

    op.drop_index('ix_sales_orders_id', table_name='sales_orders')
    op.drop_table('sales_orders')

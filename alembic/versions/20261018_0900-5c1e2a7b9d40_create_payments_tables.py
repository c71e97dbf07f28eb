"""create_payments_tables

Revision ID: 5c1e2a7b9d40
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '5c1e2a7b9d40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # users 表由认证服务维护，这里不创建

    # payments
    op.create_table(
        'payments',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False, comment='用户ID'),
        sa.Column('provider', sa.String(length=20), nullable=False, comment='支付提供商: STRIPE/RAZORPAY/CASHFREE'),
        sa.Column('provider_payment_id', sa.String(length=200), nullable=False, comment='支付渠道的支付ID'),
        sa.Column('payment_method', sa.String(length=20), nullable=True, comment='支付方式'),
        sa.Column('amount', sa.Numeric(precision=12, scale=2), nullable=False, comment='支付金额'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD', comment='货币代码 ISO-4217'),
        sa.Column('refunded_amount', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0', comment='已退款金额'),
        sa.Column('status', sa.String(length=30), nullable=False, server_default='PENDING', comment='支付状态'),
        sa.Column('description', sa.String(length=500), nullable=True, comment='描述'),
        sa.Column('error_code', sa.String(length=100), nullable=True, comment='渠道错误码'),
        sa.Column('error_message', sa.Text(), nullable=True, comment='渠道错误信息'),
        sa.Column('captured_at', sa.DateTime(timezone=True), nullable=True, comment='捕获时间'),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True, comment='最近一次退款时间'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='扩展元数据'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1', comment='乐观锁版本'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'provider_payment_id', name='uq_payments_provider_payment_id'),
    )
    op.create_index('ix_payments_user_id', 'payments', ['user_id'], unique=False)
    op.create_index('ix_payments_status', 'payments', ['status'], unique=False)
    op.create_index('ix_payments_user_status', 'payments', ['user_id', 'status'], unique=False)
    op.create_index('ix_payments_created_at', 'payments', ['created_at'], unique=False)

    # payment_refunds
    op.create_table(
        'payment_refunds',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('payment_id', sa.String(length=36), nullable=False, comment='关联的支付ID'),
        sa.Column('provider', sa.String(length=20), nullable=False, comment='支付提供商'),
        sa.Column('provider_refund_id', sa.String(length=200), nullable=True, comment='渠道退款ID'),
        sa.Column('amount', sa.Numeric(precision=12, scale=2), nullable=False, comment='退款金额'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='PENDING', comment='退款状态'),
        sa.Column('reason', sa.Text(), nullable=True, comment='退款原因'),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True, comment='处理完成时间'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='扩展元数据'),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'provider_refund_id', name='uq_payment_refunds_provider_refund_id'),
    )
    op.create_index('ix_payment_refunds_payment_id', 'payment_refunds', ['payment_id'], unique=False)

    # payment_webhook_events
    op.create_table(
        'payment_webhook_events',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('provider', sa.String(length=20), nullable=False, comment='支付提供商'),
        sa.Column('event_type', sa.String(length=100), nullable=False, comment='事件类型'),
        sa.Column('event_id', sa.String(length=200), nullable=True, comment='渠道事件ID'),
        sa.Column('raw_payload', sa.Text(), nullable=False, comment='原始请求体'),
        sa.Column('signature', sa.Text(), nullable=True, comment='签名头'),
        sa.Column('signature_verified', sa.Boolean(), nullable=False, server_default='false', comment='验签是否通过'),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default='false', comment='是否已处理'),
        sa.Column('error_message', sa.Text(), nullable=True, comment='处理错误'),
        sa.Column('payment_id', sa.String(length=36), nullable=True, comment='关联的本地支付ID'),
        sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='接收时间'),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True, comment='处理时间'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'event_id', name='uq_payment_webhook_events_provider_event_id'),
    )
    op.create_index('ix_payment_webhook_events_processed', 'payment_webhook_events', ['processed'], unique=False)
    op.create_index('ix_payment_webhook_events_payment_id', 'payment_webhook_events', ['payment_id'], unique=False)

    # audit_logs
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True, comment='操作用户ID，系统事件为空'),
        sa.Column('action', sa.String(length=64), nullable=False, comment='动作'),
        sa.Column('resource', sa.String(length=64), nullable=False, comment='资源类型'),
        sa.Column('resource_id', sa.String(length=64), nullable=True, comment='资源ID'),
        sa.Column('details', sa.JSON(), nullable=True, comment='详情'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_logs_resource', 'audit_logs', ['resource', 'resource_id'], unique=False)
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_audit_logs_action', table_name='audit_logs')
    op.drop_index('ix_audit_logs_resource', table_name='audit_logs')
    op.drop_table('audit_logs')

    op.drop_index('ix_payment_webhook_events_payment_id', table_name='payment_webhook_events')
    op.drop_index('ix_payment_webhook_events_processed', table_name='payment_webhook_events')
    op.drop_table('payment_webhook_events')

    op.drop_index('ix_payment_refunds_payment_id', table_name='payment_refunds')
    op.drop_table('payment_refunds')

    op.drop_index('ix_payments_created_at', table_name='payments')
    op.drop_index('ix_payments_user_status', table_name='payments')
    op.drop_index('ix_payments_status', table_name='payments')
    op.drop_index('ix_payments_user_id', table_name='payments')
    op.drop_table('payments')

"""
支付数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Text, JSON, Boolean,
    Index, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentModel(Base):
    """
    支付数据库模型

    这是数据库表的映射，不包含业务逻辑
    所有业务规则都在 domain.payment.entity.Payment 中
    """
    __tablename__ = "payments"

    # 主键（本地生成的 UUID 字符串）
    id = Column(String(36), primary_key=True)

    user_id = Column(Integer, nullable=False, index=True, comment="用户ID")

    # 支付渠道信息
    provider = Column(String(20), nullable=False, comment="支付提供商: STRIPE/RAZORPAY/CASHFREE")
    provider_payment_id = Column(String(200), nullable=False, comment="支付渠道的支付ID")
    payment_method = Column(String(20), nullable=True, comment="支付方式: CARD/UPI/NETBANKING/WALLET/EMI")

    # 金额信息（使用 Numeric 存储精确金额）
    amount = Column(Numeric(precision=12, scale=2), nullable=False, comment="支付金额")
    currency = Column(String(3), nullable=False, default="USD", comment="货币代码 ISO-4217")
    refunded_amount = Column(
        Numeric(precision=12, scale=2),
        nullable=False,
        default=0,
        comment="已退款金额"
    )

    status = Column(
        String(30),
        nullable=False,
        default="PENDING",
        index=True,
        comment="支付状态: PENDING/PROCESSING/SUCCEEDED/FAILED/CANCELLED/REFUNDED/PARTIALLY_REFUNDED"
    )

    description = Column(String(500), nullable=True, comment="描述")

    # 失败原因（来自渠道回调）
    error_code = Column(String(100), nullable=True, comment="渠道错误码")
    error_message = Column(Text, nullable=True, comment="渠道错误信息")

    # 时间戳
    captured_at = Column(DateTime(timezone=True), nullable=True, comment="捕获时间")
    refunded_at = Column(DateTime(timezone=True), nullable=True, comment="最近一次退款时间")
    created_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
        comment="创建时间"
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
        comment="更新时间"
    )

    # 元数据（JSON格式，使用 extra_metadata 避免与 SQLAlchemy 的 metadata 冲突）
    extra_metadata = Column("metadata", JSON, nullable=True, comment="扩展元数据")

    # 乐观锁版本号
    version = Column(Integer, nullable=False, default=1, comment="乐观锁版本")

    refunds = relationship(
        "RefundModel",
        back_populates="payment",
        lazy="selectin",
        order_by="RefundModel.created_at",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("provider", "provider_payment_id", name="uq_payments_provider_payment_id"),
        Index("ix_payments_user_status", "user_id", "status"),
        Index("ix_payments_created_at", "created_at"),
    )

    def __repr__(self):
        return (
            f"<PaymentModel(id='{self.id}', provider='{self.provider}', "
            f"amount={self.amount}, status='{self.status}')>"
        )


class RefundModel(Base):
    """
    退款数据库模型

    退款作为支付聚合的一部分，记录支付的退款明细
    """
    __tablename__ = "payment_refunds"

    id = Column(String(36), primary_key=True)

    payment_id = Column(
        String(36),
        ForeignKey("payments.id"),
        nullable=False,
        index=True,
        comment="关联的支付ID"
    )

    # 冗余渠道，保证 (provider, provider_refund_id) 唯一
    provider = Column(String(20), nullable=False, comment="支付提供商")
    provider_refund_id = Column(String(200), nullable=True, comment="渠道退款ID")

    amount = Column(Numeric(precision=12, scale=2), nullable=False, comment="退款金额")
    status = Column(
        String(20),
        nullable=False,
        default="PENDING",
        comment="退款状态: PENDING/SUCCEEDED/FAILED"
    )
    reason = Column(Text, nullable=True, comment="退款原因")

    processed_at = Column(DateTime(timezone=True), nullable=True, comment="处理完成时间")
    created_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
        comment="创建时间"
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
        comment="更新时间"
    )

    extra_metadata = Column("metadata", JSON, nullable=True, comment="扩展元数据")

    payment = relationship("PaymentModel", back_populates="refunds")

    __table_args__ = (
        UniqueConstraint("provider", "provider_refund_id", name="uq_payment_refunds_provider_refund_id"),
    )

    def __repr__(self):
        return (
            f"<RefundModel(id='{self.id}', payment_id='{self.payment_id}', "
            f"amount={self.amount}, status='{self.status}')>"
        )


class WebhookEventModel(Base):
    """
    Webhook 事件日志

    只追加；(provider, event_id) 唯一约束保证同一事件只落库一次。
    验签或解析失败的投递 event_id 为空，不参与去重。
    """
    __tablename__ = "payment_webhook_events"

    id = Column(String(36), primary_key=True)
    provider = Column(String(20), nullable=False, comment="支付提供商")
    event_type = Column(String(100), nullable=False, comment="事件类型")
    event_id = Column(String(200), nullable=True, comment="渠道事件ID")
    raw_payload = Column(Text, nullable=False, comment="原始请求体")
    signature = Column(Text, nullable=True, comment="签名头")
    signature_verified = Column(Boolean, nullable=False, default=False, comment="验签是否通过")
    processed = Column(Boolean, nullable=False, default=False, index=True, comment="是否已处理")
    error_message = Column(Text, nullable=True, comment="处理错误")
    payment_id = Column(String(36), nullable=True, index=True, comment="关联的本地支付ID")
    received_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
        comment="接收时间"
    )
    processed_at = Column(DateTime(timezone=True), nullable=True, comment="处理时间")

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_payment_webhook_events_provider_event_id"),
    )

    def __repr__(self):
        return (
            f"<WebhookEventModel(id='{self.id}', provider='{self.provider}', "
            f"event_id='{self.event_id}', processed={self.processed})>"
        )

"""
支付领域实体 - 支付聚合根

Payment owns its refunds; all status changes go through the transition table
below so that webhook-driven and caller-driven updates share one set of rules.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from domain.common.exceptions import DomainValidationException
from domain.payment.exceptions import (
    InvalidPaymentTransitionException,
    PaymentAlreadyCapturedException,
    PaymentNotCapturableException,
    PaymentNotRefundableException,
    RefundExceedsPaymentException,
)
from shared.codes.payment_codes import (
    PROVIDER_STATUS_TO_CANONICAL,
    REFUND_STATUS_TO_CANONICAL,
    lookup_status,
)


ZERO = Decimal("0")


class Provider(str, Enum):
    """支付提供商"""
    STRIPE = "STRIPE"
    RAZORPAY = "RAZORPAY"
    CASHFREE = "CASHFREE"

    @classmethod
    def parse(cls, value: "str | Provider") -> "Provider":
        if isinstance(value, Provider):
            return value
        try:
            return cls((value or "").strip().upper())
        except ValueError:
            raise DomainValidationException(
                f"Unsupported payment provider: {value}", field="provider"
            ) from None


class Currency(str, Enum):
    USD = "USD"
    INR = "INR"
    EUR = "EUR"
    GBP = "GBP"


class PaymentMethod(str, Enum):
    CARD = "CARD"
    UPI = "UPI"
    NETBANKING = "NETBANKING"
    WALLET = "WALLET"
    EMI = "EMI"


class PaymentStatus(str, Enum):
    """支付状态枚举"""
    PENDING = "PENDING"                        # 待支付
    PROCESSING = "PROCESSING"                  # 处理中
    SUCCEEDED = "SUCCEEDED"                    # 支付成功
    FAILED = "FAILED"                          # 支付失败
    CANCELLED = "CANCELLED"                    # 已取消
    REFUNDED = "REFUNDED"                      # 已退款
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"  # 部分退款


class RefundStatus(str, Enum):
    """退款状态枚举"""
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class WebhookEventKind(str, Enum):
    """Canonical meaning of a gateway event, independent of its type string."""
    PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
    PAYMENT_PROCESSING = "PAYMENT_PROCESSING"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_CANCELLED = "PAYMENT_CANCELLED"
    REFUND_UPDATED = "REFUND_UPDATED"


def map_provider_status(raw: Optional[str]) -> PaymentStatus:
    """Gateway status string -> canonical status; unknown strings are PENDING."""
    return PaymentStatus(lookup_status(PROVIDER_STATUS_TO_CANONICAL, raw))


def map_refund_status(raw: Optional[str]) -> RefundStatus:
    return RefundStatus(lookup_status(REFUND_STATUS_TO_CANONICAL, raw))


# Forward transitions reachable through transition_to(); refund states are
# only entered through apply_refund() so status never drifts from amounts.
_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.PROCESSING,
        PaymentStatus.SUCCEEDED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    }),
    PaymentStatus.PROCESSING: frozenset({
        PaymentStatus.SUCCEEDED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    }),
    PaymentStatus.SUCCEEDED: frozenset(),
    PaymentStatus.PARTIALLY_REFUNDED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

# How far along the lifecycle a status is; lower-ranked targets are stale.
_PROGRESS: dict[PaymentStatus, int] = {
    PaymentStatus.PENDING: 0,
    PaymentStatus.PROCESSING: 1,
    PaymentStatus.SUCCEEDED: 2,
    PaymentStatus.FAILED: 2,
    PaymentStatus.CANCELLED: 2,
    PaymentStatus.PARTIALLY_REFUNDED: 3,
    PaymentStatus.REFUNDED: 4,
}

_CAPTURABLE = frozenset({PaymentStatus.PENDING, PaymentStatus.PROCESSING})
_REFUNDABLE = frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.PARTIALLY_REFUNDED})
_SETTLED = frozenset({
    PaymentStatus.SUCCEEDED,
    PaymentStatus.PARTIALLY_REFUNDED,
    PaymentStatus.REFUNDED,
})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass
class Refund:
    """
    退款实体 - Payment 聚合的一部分

    A refund never outlives its payment and is never edited except for its
    status, which the gateway may settle later through a webhook.
    """

    id: str
    payment_id: str
    provider_refund_id: Optional[str]
    amount: Decimal
    status: RefundStatus
    reason: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        if self.amount <= 0:
            raise DomainValidationException(
                f"Refund amount must be greater than 0: {self.amount}", field="amount"
            )
        self.processed_at = _ensure_utc(self.processed_at)
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        if self.metadata is None:
            self.metadata = {}

    @property
    def counts_towards_total(self) -> bool:
        return self.status != RefundStatus.FAILED

    def settle(self, status: RefundStatus) -> bool:
        """Apply a gateway-reported status; returns True if anything changed."""
        if status == self.status:
            return False
        if self.status != RefundStatus.PENDING:
            # SUCCEEDED/FAILED are final for a refund
            return False
        self.status = status
        self.processed_at = _utcnow()
        self.updated_at = self.processed_at
        return True


@dataclass
class Payment:
    """
    支付聚合根 - 管理支付生命周期

    业务规则：
    1. 金额必须大于0，且始终为定点小数
    2. 状态转换必须遵循状态机（_TRANSITIONS）
    3. refunded_amount 单调递增且不超过 amount
    4. 退款状态由 refunded_amount 与 amount 推导，不可单独设置
    5. 只有支付所有者（或特权用户）可以操作
    """

    id: str
    user_id: int
    provider: Provider
    provider_payment_id: str
    amount: Decimal
    currency: Currency
    status: PaymentStatus

    payment_method: Optional[PaymentMethod] = None
    description: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    refunded_amount: Decimal = field(default_factory=lambda: ZERO)
    captured_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    error_code: Optional[str] = None
    error_message: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: Optional[int] = None

    refunds: list[Refund] = field(default_factory=list)

    def __post_init__(self):
        """初始化后验证"""
        if self.amount <= 0:
            raise DomainValidationException(
                f"Payment amount must be greater than 0: {self.amount}", field="amount"
            )
        if self.refunded_amount < 0 or self.refunded_amount > self.amount:
            raise DomainValidationException(
                f"Refunded amount {self.refunded_amount} out of range for {self.amount}",
                field="refunded_amount",
            )
        self.captured_at = _ensure_utc(self.captured_at)
        self.refunded_at = _ensure_utc(self.refunded_at)
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        if self.metadata is None:
            self.metadata = {}

    # -- ownership -----------------------------------------------------------

    def is_owned_by(self, user_id: int) -> bool:
        return self.user_id == user_id

    # -- status machine ------------------------------------------------------

    def can_transition(self, target: PaymentStatus) -> bool:
        return target in _TRANSITIONS[self.status]

    def transition_to(self, target: PaymentStatus) -> None:
        if not self.can_transition(target):
            raise InvalidPaymentTransitionException(self.status.value, target.value)
        self.status = target
        self.updated_at = _utcnow()
        if target == PaymentStatus.SUCCEEDED:
            self.error_code = None
            self.error_message = None
            if self.captured_at is None:
                self.captured_at = self.updated_at

    def apply_provider_status(self, target: PaymentStatus) -> bool:
        """
        Move forward to a status reported by the gateway.

        Returns False for no-ops: same status, stale (out-of-order) reports,
        and refund states whose amounts are unknown here. A success report
        against a FAILED/CANCELLED payment contradicts the local ledger and
        raises so it surfaces for manual reconciliation.
        """
        if target == self.status:
            return False
        if self.can_transition(target):
            self.transition_to(target)
            return True
        if target == PaymentStatus.SUCCEEDED and self.status in (
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
        ):
            raise InvalidPaymentTransitionException(self.status.value, target.value)
        return False

    def is_stale_report(self, target: PaymentStatus) -> bool:
        return _PROGRESS[target] < _PROGRESS[self.status]

    @property
    def is_settled(self) -> bool:
        return self.status in _SETTLED

    # -- capture -------------------------------------------------------------

    def ensure_capturable(self) -> None:
        if self.status in _SETTLED:
            raise PaymentAlreadyCapturedException(self.id)
        if self.status not in _CAPTURABLE:
            raise PaymentNotCapturableException(self.id, self.status.value)

    def validate_capture_amount(self, amount: Optional[Decimal]) -> None:
        if amount is None:
            return
        if amount <= 0:
            raise DomainValidationException("Capture amount must be greater than 0", field="amount")
        if amount > self.amount:
            raise DomainValidationException(
                f"Capture amount {amount} exceeds payment amount {self.amount}", field="amount"
            )

    def mark_captured(self, status: PaymentStatus, captured_amount: Optional[Decimal] = None) -> None:
        """标记捕获结果；部分捕获时 amount 调整为实际捕获金额"""
        if self.status not in _SETTLED:
            self.apply_provider_status(status)
        if self.status == PaymentStatus.SUCCEEDED:
            if self.captured_at is None:
                self.captured_at = _utcnow()
            if captured_amount is not None and ZERO < captured_amount < self.amount and self.refunded_amount == ZERO:
                self.metadata = {**self.metadata, "authorized_amount": str(self.amount)}
                self.amount = captured_amount
        self.updated_at = _utcnow()

    # -- refunds -------------------------------------------------------------

    def can_refund(self) -> bool:
        """检查是否可以退款"""
        return self.status in _REFUNDABLE and self.refunded_amount < self.amount

    def calculate_refundable_amount(self) -> Decimal:
        """计算可退款金额"""
        return self.amount - self.refunded_amount

    def ensure_refundable(self, amount: Optional[Decimal] = None) -> Decimal:
        """Check refund preconditions and return the effective refund amount."""
        if not self.can_refund():
            raise PaymentNotRefundableException(self.id, self.status.value)
        refundable = self.calculate_refundable_amount()
        if amount is None:
            return refundable
        if amount <= 0:
            raise DomainValidationException("Refund amount must be greater than 0", field="amount")
        if amount > refundable:
            raise RefundExceedsPaymentException(amount, refundable)
        return amount

    def apply_refund(self, refund_amount: Decimal) -> None:
        """
        应用退款

        业务规则：
        1. 只有成功或部分退款的支付才能退款
        2. 退款金额不能超过剩余可退金额
        3. 状态由累计退款金额推导：等于 amount 为 REFUNDED，否则 PARTIALLY_REFUNDED
        """
        self.ensure_refundable(refund_amount)
        self.refunded_amount += refund_amount
        self.refunded_at = _utcnow()
        self.updated_at = self.refunded_at
        if self.refunded_amount == self.amount:
            self.status = PaymentStatus.REFUNDED
        else:
            self.status = PaymentStatus.PARTIALLY_REFUNDED

    def add_refund(self, refund: Refund) -> None:
        if refund.counts_towards_total:
            self.apply_refund(refund.amount)
        self.refunds.append(refund)

    # -- failures ------------------------------------------------------------

    def record_failure(self, code: Optional[str], message: Optional[str]) -> None:
        self.error_code = code
        self.error_message = message
        self.updated_at = _utcnow()


@dataclass
class WebhookEventLog:
    """
    Webhook 事件日志 - 不可删除的合规记录

    Rows with event_id None are deliveries that failed verification or parsing;
    they are kept for audit but never take part in deduplication.
    """

    id: str
    provider: Provider
    event_type: str
    event_id: Optional[str]
    raw_payload: str
    signature: Optional[str] = None
    signature_verified: bool = False
    processed: bool = False
    error_message: Optional[str] = None
    payment_id: Optional[str] = None
    received_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    def mark_processed(self, payment_id: Optional[str] = None, note: Optional[str] = None) -> None:
        self.processed = True
        self.processed_at = _utcnow()
        self.error_message = note
        if payment_id is not None:
            self.payment_id = payment_id

    def mark_failed(self, message: str) -> None:
        self.processed = False
        self.error_message = message[:2000]

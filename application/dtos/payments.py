"""
Payment DTOs (Pydantic v2) used at application boundaries.
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_serializer

from domain.payment.entity import (
    Currency,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Provider,
    Refund,
    RefundStatus,
    WebhookEventKind,
)


class DTOBase(BaseModel):
    """Base DTO: unify datetime serialization to UTC-Z for all subclasses."""

    @model_serializer(mode="wrap")
    def _serialize_model(self, handler):  # type: ignore[override]
        data = handler(self)

        def convert(value):
            if isinstance(value, datetime):
                ts = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
                s = ts.astimezone(timezone.utc).isoformat()
                return s.replace("+00:00", "Z")
            if isinstance(value, Decimal):
                return str(value)
            if isinstance(value, list):
                return [convert(v) for v in value]
            if isinstance(value, dict):
                return {k: convert(v) for k, v in value.items()}
            return value

        return convert(data)


# --- requests --------------------------------------------------------------

class CreatePayment(DTOBase):
    """创建支付请求"""
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    currency: Currency = Currency.USD
    payment_method: Optional[PaymentMethod] = None
    description: Optional[str] = Field(None, max_length=500)
    metadata: Optional[dict[str, Any]] = None

    @field_validator("currency", mode="before")
    @classmethod
    def _upper_currency(cls, v):
        return v.upper() if isinstance(v, str) else v

    @field_validator("payment_method", mode="before")
    @classmethod
    def _upper_method(cls, v):
        return v.upper() if isinstance(v, str) else v


class CapturePaymentRequest(DTOBase):
    amount: Optional[Decimal] = Field(None, gt=0, max_digits=12, decimal_places=2)


class RefundPaymentRequest(DTOBase):
    """退款请求；amount 为空表示退还剩余全部金额"""
    amount: Optional[Decimal] = Field(None, gt=0, max_digits=12, decimal_places=2)
    reason: Optional[str] = Field(None, max_length=500)


# --- gateway results -------------------------------------------------------

class PaymentIntent(BaseModel):
    """What a gateway reports about one payment; `status` is the raw gateway string."""
    provider_payment_id: str
    status: str
    client_secret: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class RefundResult(BaseModel):
    provider_refund_id: str
    amount: Decimal
    status: str


class WebhookEvent(BaseModel):
    """
    Parsed gateway event.

    `id`/`type`/`data` are what the gateway sent; the remaining fields are the
    adapter's canonical extraction so the pipeline never reads provider JSON.
    """
    id: str
    type: str
    data: dict[str, Any] = Field(default_factory=dict)
    kind: Optional[WebhookEventKind] = None
    provider_payment_id: Optional[str] = None
    provider_refund_id: Optional[str] = None
    amount: Optional[Decimal] = None
    status: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


# --- responses -------------------------------------------------------------

class RefundDTO(DTOBase):
    id: str
    payment_id: str
    provider_refund_id: Optional[str]
    amount: Decimal
    status: RefundStatus
    reason: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_entity(cls, refund: Refund) -> "RefundDTO":
        return cls.model_validate(refund)


class PaymentDTO(DTOBase):
    """支付响应DTO"""
    id: str
    user_id: int
    provider: Provider
    provider_payment_id: str
    amount: Decimal
    currency: Currency
    status: PaymentStatus
    payment_method: Optional[PaymentMethod] = None
    description: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    refunded_amount: Decimal = Decimal("0")
    captured_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    refunds: list[RefundDTO] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_entity(cls, payment: Payment) -> "PaymentDTO":
        return cls.model_validate(payment)


class CreatedPaymentDTO(DTOBase):
    """Creation result: the stored payment plus what the client needs to pay."""
    payment: PaymentDTO
    client_secret: Optional[str] = None


class RefundOutcomeDTO(DTOBase):
    payment: PaymentDTO
    refund: RefundDTO


class WebhookAck(DTOBase):
    received: bool = True
    duplicate: bool = False
    event_id: Optional[str] = None
    message: Optional[str] = None


# --- collaborators ---------------------------------------------------------

class Requester(BaseModel):
    """Authenticated caller as resolved by the API layer."""
    id: int
    is_privileged: bool = False

    model_config = ConfigDict(frozen=True)


class UserRef(BaseModel):
    id: int
    username: Optional[str] = None
    email: Optional[str] = None
    is_active: bool = True
    is_superuser: bool = False


class AuditEntry(BaseModel):
    action: str
    resource: str = "payments"
    resource_id: Optional[str] = None
    user_id: Optional[int] = None
    details: dict[str, Any] = Field(default_factory=dict)


class AuditAction:
    PAYMENT_CREATED = "PAYMENT_CREATED"
    PAYMENT_CAPTURED = "PAYMENT_CAPTURED"
    PAYMENT_REFUNDED = "PAYMENT_REFUNDED"
    PAYMENT_WEBHOOK_APPLIED = "PAYMENT_WEBHOOK_APPLIED"
    PAYMENT_RECONCILED = "PAYMENT_RECONCILED"

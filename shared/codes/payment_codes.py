"""
Payment specific codes and the gateway status vocabulary.

`PROVIDER_STATUS_TO_CANONICAL` is the one reviewable table translating every
gateway status string we know about into a canonical payment status value.
Anything not listed here is treated as ``PENDING`` by the domain layer:
money-relevant state is never dropped, and success is never guessed.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    SIGNATURE_ERROR = 60002
    TIMEOUT = 60003
    CONFIGURATION_ERROR = 60005
    CONCURRENT_UPDATE = 60006


# Canonical values match domain.payment.entity.PaymentStatus
PENDING = "PENDING"
PROCESSING = "PROCESSING"
SUCCEEDED = "SUCCEEDED"
FAILED = "FAILED"
CANCELLED = "CANCELLED"
REFUNDED = "REFUNDED"
PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"


PROVIDER_STATUS_TO_CANONICAL: dict[str, str] = {
    # Generic vocabulary shared by most gateways
    "pending": PENDING,
    "created": PENDING,
    "processing": PROCESSING,
    "succeeded": SUCCEEDED,
    "success": SUCCEEDED,
    "captured": SUCCEEDED,
    "paid": SUCCEEDED,
    "failed": FAILED,
    "canceled": CANCELLED,
    "cancelled": CANCELLED,
    "refunded": REFUNDED,
    "partially_refunded": PARTIALLY_REFUNDED,
    # Stripe PaymentIntent.status
    "requires_payment_method": PENDING,
    "requires_confirmation": PENDING,
    "requires_action": PENDING,
    "requires_capture": PROCESSING,
    # Razorpay order/payment status
    "attempted": PENDING,
    "authorized": PROCESSING,
    # Cashfree order_status / payment_status
    "ACTIVE": PENDING,
    "PAID": SUCCEEDED,
    "EXPIRED": CANCELLED,
    "TERMINATED": CANCELLED,
    "TERMINATION_REQUESTED": PROCESSING,
    "SUCCESS": SUCCEEDED,
    "NOT_ATTEMPTED": PENDING,
    "FAILED": FAILED,
    "USER_DROPPED": FAILED,
    "VOID": CANCELLED,
    "CANCELLED": CANCELLED,
    "PENDING": PENDING,
}


# Refund statuses reported by gateways
REFUND_STATUS_TO_CANONICAL: dict[str, str] = {
    "pending": PENDING,
    "requires_action": PENDING,
    "created": PENDING,
    "processed": SUCCEEDED,
    "succeeded": SUCCEEDED,
    "success": SUCCEEDED,
    "failed": FAILED,
    "canceled": FAILED,
    "cancelled": FAILED,
    "SUCCESS": SUCCEEDED,
    "PENDING": PENDING,
    "ONHOLD": PENDING,
    "CANCELLED": FAILED,
    "FAILED": FAILED,
}


def lookup_status(table: dict[str, str], raw: str | None, default: str = PENDING) -> str:
    """Resolve `raw` against `table`: exact key first, then case-insensitive."""
    if not raw:
        return default
    if raw in table:
        return table[raw]
    lowered = raw.strip().lower()
    for key, value in table.items():
        if key.lower() == lowered:
            return value
    return default

"""
支付领域异常

Payment state/ownership errors plus the gateway error family. Gateway errors
live here (not in infrastructure) so the application layer can react to a
timeout without importing adapter code.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from domain.common.exceptions import (
    BusinessException,
    ConflictException,
    DomainValidationException,
    ForbiddenException,
    ResourceNotFoundException,
)
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


class PaymentNotFoundException(ResourceNotFoundException):
    """支付记录不存在"""
    def __init__(self, identifier: str):
        super().__init__("Payment", identifier)


class PaymentOwnershipException(ForbiddenException):
    """非本人支付且无特权"""
    def __init__(self, payment_id: str):
        super().__init__("Not allowed to access this payment", details={"payment_id": payment_id})


class PaymentAlreadyCapturedException(ConflictException):
    def __init__(self, payment_id: str):
        super().__init__(
            "Payment already captured",
            error_type="PaymentAlreadyCaptured",
            details={"payment_id": payment_id},
        )


class PaymentNotCapturableException(ConflictException):
    def __init__(self, payment_id: str, status: str):
        super().__init__(
            f"Payment in status {status} cannot be captured",
            error_type="PaymentNotCapturable",
            details={"payment_id": payment_id, "status": status},
        )


class PaymentNotRefundableException(ConflictException):
    """支付不可退款"""
    def __init__(self, payment_id: str, status: str):
        super().__init__(
            f"Payment in status {status} is not eligible for refund",
            error_type="PaymentNotRefundable",
            details={"payment_id": payment_id, "status": status},
        )


class RefundExceedsPaymentException(DomainValidationException):
    """退款金额超过可退金额"""
    def __init__(self, refund_amount: Decimal, available: Decimal):
        super().__init__(
            f"Refund amount {refund_amount} exceeds refundable amount {available}",
            field="amount",
            details={"requested": str(refund_amount), "available": str(available)},
        )


class InvalidPaymentTransitionException(ConflictException):
    def __init__(self, current: str, target: str):
        super().__init__(
            f"Cannot transition payment from {current} to {target}",
            error_type="InvalidPaymentTransition",
            details={"from": current, "to": target},
        )


class PaymentConcurrencyException(BusinessException):
    """Optimistic version check failed; the caller retries with fresh data."""
    def __init__(self, payment_id: str):
        super().__init__(
            code=PaymentCode.CONCURRENT_UPDATE,
            message="Payment was modified concurrently",
            error_type="PaymentConcurrentUpdate",
            details={"payment_id": payment_id},
        )


class WebhookEventAlreadyRecordedException(BusinessException):
    """(provider, event_id) unique constraint fired"""
    def __init__(self, provider: str, event_id: str):
        super().__init__(
            code=PaymentCode.SUCCESS,
            message="Webhook event already recorded",
            error_type="WebhookDuplicate",
            details={"provider": provider, "event_id": event_id},
        )


# --- gateway errors --------------------------------------------------------

def _gateway_details(provider: str, operation: Optional[str], provider_code: Optional[str], details: Optional[dict]) -> dict:
    full_details = {"provider": provider, "operation": operation, "provider_code": provider_code}
    if details:
        full_details.update(details)
    return {k: v for k, v in full_details.items() if v is not None}


class PaymentProviderError(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        provider: str,
        operation: str | None = None,
        provider_code: str | None = None,
        details: Optional[dict] = None,
    ):
        super().__init__(
            code=PaymentCode.PROVIDER_ERROR,
            message=message,
            error_type="PaymentProviderError",
            details=_gateway_details(provider, operation, provider_code, details),
        )


class PaymentTimeoutError(BusinessException):
    """The gateway did not answer in time; the outcome is unknown."""
    def __init__(self, message: str, *, provider: str, operation: str | None = None, details: Optional[dict] = None):
        super().__init__(
            code=PaymentCode.TIMEOUT,
            message=message,
            error_type="PaymentTimeout",
            details=_gateway_details(provider, operation, None, details),
        )


class PaymentSignatureError(BusinessException):
    def __init__(self, message: str, *, provider: str, details: Optional[dict] = None):
        super().__init__(
            code=PaymentCode.SIGNATURE_ERROR,
            message=message,
            error_type="PaymentSignatureError",
            details=_gateway_details(provider, None, None, details),
        )


class PaymentConfigurationError(BusinessException):
    def __init__(self, message: str, *, provider: str):
        super().__init__(
            code=PaymentCode.CONFIGURATION_ERROR,
            message=message,
            error_type="PaymentConfigurationError",
            details={"provider": provider},
        )


class WebhookPayloadException(BusinessException):
    """验签通过但无法解析的回调"""
    def __init__(self, provider: str, reason: str):
        super().__init__(
            code=BusinessCode.PARAM_ERROR,
            message="Malformed webhook payload",
            error_type="WebhookPayloadError",
            details={"provider": provider, "reason": reason[:200]},
        )

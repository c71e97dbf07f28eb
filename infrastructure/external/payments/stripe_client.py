"""
Stripe PaymentIntents adapter using the official stripe-python SDK.

Notes on SDK usage:
- The SDK is synchronous; calls run in a worker thread bounded by
  ``asyncio.wait_for`` so a stalled request cannot hold the event loop.
- The API key is passed per call instead of mutating ``stripe.api_key`` so
  several adapter instances can coexist in one process.
- PaymentIntents are created with ``capture_method="manual"``; funds are
  taken by an explicit capture.
- Webhook verification uses ``stripe.WebhookSignature.verify_header`` with
  the ``Stripe-Signature`` header.
"""
from __future__ import annotations

import asyncio
import json
from decimal import Decimal
from typing import Any, Callable, Optional

import stripe

from application.dtos.payments import PaymentIntent, RefundResult, WebhookEvent
from core.logging_config import get_logger
from domain.payment.entity import Currency, PaymentMethod, Provider, WebhookEventKind
from domain.payment.exceptions import PaymentProviderError, PaymentTimeoutError
from infrastructure.external.payments.base import BasePaymentClient, from_minor, to_minor


logger = get_logger(__name__)

EVENT_KINDS: dict[str, WebhookEventKind] = {
    "payment_intent.succeeded": WebhookEventKind.PAYMENT_SUCCEEDED,
    "payment_intent.processing": WebhookEventKind.PAYMENT_PROCESSING,
    "payment_intent.amount_capturable_updated": WebhookEventKind.PAYMENT_PROCESSING,
    "payment_intent.payment_failed": WebhookEventKind.PAYMENT_FAILED,
    "payment_intent.canceled": WebhookEventKind.PAYMENT_CANCELLED,
    "refund.created": WebhookEventKind.REFUND_UPDATED,
    "refund.updated": WebhookEventKind.REFUND_UPDATED,
    "refund.failed": WebhookEventKind.REFUND_UPDATED,
    "charge.refund.updated": WebhookEventKind.REFUND_UPDATED,
}

# Stripe only accepts these refund reasons; anything else goes to metadata
_STRIPE_REFUND_REASONS = {"duplicate", "fraudulent", "requested_by_customer"}


def _plain(obj: Any) -> dict[str, Any]:
    if not obj:
        return {}
    return {str(k): v for k, v in obj.items()}


class StripeClient(BasePaymentClient):
    provider = Provider.STRIPE
    signature_header = "Stripe-Signature"
    required_credentials = ("api_key",)

    def __init__(self, *, tolerance_seconds: int = 300, **kwargs) -> None:
        super().__init__(**kwargs)
        self._tolerance = tolerance_seconds

    async def _call(self, operation: str, fn: Callable[..., Any], **params) -> Any:
        params["api_key"] = self.credentials.api_key
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, **params),
                timeout=self.total_timeout,
            )
        except asyncio.TimeoutError as exc:
            self._log("payment_gateway_timeout", level="warning", operation=operation, outcome="unknown")
            raise PaymentTimeoutError(
                "Stripe did not respond in time", provider=self.provider.value, operation=operation
            ) from exc
        except stripe.APIConnectionError as exc:
            # The request may or may not have reached Stripe
            self._log("payment_gateway_timeout", level="warning", operation=operation, outcome="unknown")
            raise PaymentTimeoutError(
                "Stripe connection failed", provider=self.provider.value, operation=operation,
                details={"error": str(exc.user_message or exc)},
            ) from exc
        except stripe.StripeError as exc:
            self._log(
                "payment_gateway_error",
                level="warning",
                operation=operation,
                http_status=exc.http_status,
                provider_code=exc.code,
            )
            raise PaymentProviderError(
                str(exc.user_message or "Stripe request failed"),
                provider=self.provider.value,
                operation=operation,
                provider_code=exc.code,
                details={"http_status": exc.http_status} if exc.http_status else None,
            ) from exc

    def _intent(self, pi: Any, *, client_secret: Optional[str] = None) -> PaymentIntent:
        currency = str(pi.currency or "").upper() or None
        amount = pi.amount_received if pi.status == "succeeded" and pi.amount_received else pi.amount
        return PaymentIntent(
            provider_payment_id=str(pi.id),
            status=str(pi.status),
            client_secret=client_secret,
            amount=from_minor(amount, currency or Currency.USD.value),
            currency=currency,
            metadata=_plain(pi.metadata),
        )

    async def create_payment(
        self,
        *,
        amount: Decimal,
        currency: Currency,
        user_id: int,
        description: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        payment_method: Optional[PaymentMethod] = None,
    ) -> PaymentIntent:
        meta = {k: str(v) for k, v in (metadata or {}).items()}
        meta["user_id"] = str(user_id)
        params: dict[str, Any] = {
            "amount": to_minor(amount, currency),
            "currency": currency.value.lower(),
            "metadata": meta,
            "capture_method": "manual",
        }
        if description:
            params["description"] = description
        if payment_method == PaymentMethod.CARD:
            params["payment_method_types"] = ["card"]
        else:
            params["automatic_payment_methods"] = {"enabled": True}

        pi = await self._call("create_payment", stripe.PaymentIntent.create, **params)
        self._log("payment_gateway_created", provider_payment_id=pi.id, status=pi.status)
        return self._intent(pi, client_secret=pi.client_secret)

    async def capture_payment(self, provider_payment_id: str, amount: Optional[Decimal] = None) -> PaymentIntent:
        params: dict[str, Any] = {}
        if amount is not None:
            current = await self._call("capture_payment", stripe.PaymentIntent.retrieve, id=provider_payment_id)
            params["amount_to_capture"] = to_minor(amount, str(current.currency).upper())
        pi = await self._call("capture_payment", stripe.PaymentIntent.capture, intent=provider_payment_id, **params)
        self._log("payment_gateway_captured", provider_payment_id=pi.id, status=pi.status)
        return self._intent(pi)

    async def refund_payment(
        self,
        provider_payment_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        params: dict[str, Any] = {"payment_intent": provider_payment_id}
        currency: Optional[str] = None
        if amount is not None:
            current = await self._call("refund_payment", stripe.PaymentIntent.retrieve, id=provider_payment_id)
            currency = str(current.currency).upper()
            params["amount"] = to_minor(amount, currency)
        if reason in _STRIPE_REFUND_REASONS:
            params["reason"] = reason
        elif reason:
            params["metadata"] = {"reason": reason[:500]}

        refund = await self._call("refund_payment", stripe.Refund.create, **params)
        currency = currency or str(refund.currency or "").upper() or Currency.USD.value
        self._log("payment_gateway_refunded", provider_payment_id=provider_payment_id, status=refund.status)
        return RefundResult(
            provider_refund_id=str(refund.id),
            amount=from_minor(refund.amount, currency) or Decimal("0"),
            status=str(refund.status or "pending"),
        )

    async def get_payment_status(self, provider_payment_id: str) -> PaymentIntent:
        pi = await self._call("get_payment_status", stripe.PaymentIntent.retrieve, id=provider_payment_id)
        return self._intent(pi)

    def verify_webhook(self, raw_payload: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
        if not secret:
            self._log("webhook_secret_missing", level="warning")
            return False
        if not signature:
            return False
        try:
            stripe.WebhookSignature.verify_header(
                raw_payload.decode("utf-8"),
                signature,
                secret,
                tolerance=self._tolerance,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
            self._log("webhook_signature_invalid", level="warning", error=str(exc))
            return False
        return True

    def parse_webhook_event(self, raw_payload: bytes) -> WebhookEvent:
        event = json.loads(raw_payload)
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise ValueError("Stripe webhook body is not an event")
        event_type = str(event["type"])
        obj = (event.get("data") or {}).get("object") or {}
        kind = EVENT_KINDS.get(event_type)
        currency = str(obj.get("currency") or Currency.USD.value).upper()

        if kind == WebhookEventKind.REFUND_UPDATED:
            payment_intent = obj.get("payment_intent")
            return WebhookEvent(
                id=str(event["id"]),
                type=event_type,
                data=obj,
                kind=kind,
                provider_payment_id=payment_intent if isinstance(payment_intent, str) else None,
                provider_refund_id=obj.get("id"),
                amount=from_minor(obj.get("amount"), currency),
                status=obj.get("status"),
            )

        error = obj.get("last_payment_error") or {}
        return WebhookEvent(
            id=str(event["id"]),
            type=event_type,
            data=obj,
            kind=kind,
            provider_payment_id=obj.get("id") if obj.get("object") == "payment_intent" else None,
            amount=from_minor(obj.get("amount_received") or obj.get("amount"), currency),
            status=obj.get("status"),
            error_code=error.get("code"),
            error_message=error.get("message"),
        )

"""
Razorpay adapter over the Orders/Payments REST API (httpx).

A local payment maps to a Razorpay *order* (``order_...``); the customer's
payment attempts (``pay_...``) hang off that order. Capture and refund act on
the latest payment of the order, so callers only ever hold the order id.

Webhooks are signed with hex HMAC-SHA256 of the raw body in
``X-Razorpay-Signature``. The body carries no event id, so one is derived
from the event name and the entity it concerns; redeliveries of the same
event produce the same id.
"""
from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, Optional

from application.dtos.payments import PaymentIntent, RefundResult, WebhookEvent
from domain.payment.entity import Currency, PaymentMethod, Provider, WebhookEventKind
from domain.payment.exceptions import PaymentProviderError
from infrastructure.external.payments.base import BasePaymentClient, from_minor, to_minor


RAZORPAY_API_BASE = "https://api.razorpay.com/v1"

EVENT_KINDS: dict[str, WebhookEventKind] = {
    "payment.captured": WebhookEventKind.PAYMENT_SUCCEEDED,
    "order.paid": WebhookEventKind.PAYMENT_SUCCEEDED,
    "payment.authorized": WebhookEventKind.PAYMENT_PROCESSING,
    "payment.failed": WebhookEventKind.PAYMENT_FAILED,
    "refund.created": WebhookEventKind.REFUND_UPDATED,
    "refund.processed": WebhookEventKind.REFUND_UPDATED,
    "refund.failed": WebhookEventKind.REFUND_UPDATED,
}


def _entity(payload: dict[str, Any], name: str) -> dict[str, Any]:
    return ((payload.get(name) or {}).get("entity")) or {}


class RazorpayClient(BasePaymentClient):
    provider = Provider.RAZORPAY
    signature_header = "X-Razorpay-Signature"
    required_credentials = ("api_key", "api_secret")

    def _base_url(self) -> str:
        return (self._credentials.base_url if self._credentials else None) or RAZORPAY_API_BASE

    def _auth(self):
        creds = self.credentials
        return (creds.api_key, creds.api_secret)

    def _error_from_body(self, body: dict[str, Any]) -> tuple[Optional[str], Optional[str]]:
        error = body.get("error") or {}
        return error.get("code"), error.get("description")

    def _intent_from_order(self, order: dict[str, Any], **extra) -> PaymentIntent:
        currency = order.get("currency") or Currency.INR.value
        return PaymentIntent(
            provider_payment_id=str(order["id"]),
            status=str(order.get("status") or "created"),
            amount=from_minor(order.get("amount"), currency),
            currency=currency,
            metadata=dict(order.get("notes") or {}),
            **extra,
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
        notes = {k: str(v) for k, v in (metadata or {}).items()}
        notes["user_id"] = str(user_id)
        if description:
            notes["description"] = description[:255]
        if payment_method:
            notes["payment_method"] = payment_method.value

        order = await self._request(
            "POST",
            "/orders",
            operation="create_payment",
            json={
                "amount": to_minor(amount, currency),
                "currency": currency.value,
                "notes": notes,
            },
        )
        self._log("payment_gateway_created", provider_payment_id=order.get("id"))
        # Checkout needs the order id; there is no separate client secret
        return self._intent_from_order(order, client_secret=str(order["id"]))

    async def _latest_payment(self, order_id: str, operation: str) -> dict[str, Any]:
        body = await self._request("GET", f"/orders/{order_id}/payments", operation=operation)
        items = body.get("items") or []
        if not items:
            raise PaymentProviderError(
                "No payment attempt found for order",
                provider=self.provider.value,
                operation=operation,
                details={"provider_payment_id": order_id},
            )
        return max(items, key=lambda p: p.get("created_at") or 0)

    async def capture_payment(self, provider_payment_id: str, amount: Optional[Decimal] = None) -> PaymentIntent:
        payment = await self._latest_payment(provider_payment_id, "capture_payment")
        currency = payment.get("currency") or Currency.INR.value
        if payment.get("status") == "authorized":
            capture_amount = to_minor(amount, currency) if amount is not None else payment.get("amount")
            payment = await self._request(
                "POST",
                f"/payments/{payment['id']}/capture",
                operation="capture_payment",
                json={"amount": capture_amount, "currency": currency},
            )
        self._log("payment_gateway_captured", provider_payment_id=provider_payment_id, status=payment.get("status"))
        return PaymentIntent(
            provider_payment_id=provider_payment_id,
            status=str(payment.get("status") or "pending"),
            amount=from_minor(payment.get("amount"), currency),
            currency=currency,
            metadata={"razorpay_payment_id": str(payment.get("id"))},
        )

    async def refund_payment(
        self,
        provider_payment_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        payment = await self._latest_payment(provider_payment_id, "refund_payment")
        currency = payment.get("currency") or Currency.INR.value
        body: dict[str, Any] = {"notes": {"reason": reason or "Customer requested refund"}}
        if amount is not None:
            body["amount"] = to_minor(amount, currency)
        refund = await self._request(
            "POST",
            f"/payments/{payment['id']}/refund",
            operation="refund_payment",
            json=body,
        )
        self._log("payment_gateway_refunded", provider_payment_id=provider_payment_id, status=refund.get("status"))
        return RefundResult(
            provider_refund_id=str(refund["id"]),
            amount=from_minor(refund.get("amount"), currency) or Decimal("0"),
            status=str(refund.get("status") or "pending"),
        )

    async def get_payment_status(self, provider_payment_id: str) -> PaymentIntent:
        order = await self._request("GET", f"/orders/{provider_payment_id}", operation="get_payment_status")
        return self._intent_from_order(order)

    def parse_webhook_event(self, raw_payload: bytes) -> WebhookEvent:
        event = json.loads(raw_payload)
        if not isinstance(event, dict) or not event.get("event"):
            raise ValueError("Razorpay webhook body has no event name")
        event_type = str(event["event"])
        payload = event.get("payload") or {}
        payment = _entity(payload, "payment")
        order = _entity(payload, "order")
        refund = _entity(payload, "refund")

        subject = refund or payment or order
        if not subject.get("id"):
            raise ValueError("Razorpay webhook body has no entity")

        currency = subject.get("currency") or payment.get("currency") or Currency.INR.value
        kind = EVENT_KINDS.get(event_type)
        if refund:
            status = refund.get("status")
        elif payment:
            status = payment.get("status")
        else:
            status = order.get("status")

        return WebhookEvent(
            id=f"{event_type}:{subject['id']}",
            type=event_type,
            data=payload,
            kind=kind,
            provider_payment_id=payment.get("order_id") or order.get("id"),
            provider_refund_id=refund.get("id"),
            amount=from_minor(subject.get("amount"), currency),
            status=status,
            error_code=payment.get("error_code"),
            error_message=payment.get("error_description"),
        )

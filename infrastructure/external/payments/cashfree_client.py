"""
Cashfree Payment Gateway (PG) adapter over the REST API (httpx).

Orders are created with a locally generated ``order_id`` which becomes the
provider payment id; ``payment_session_id`` is handed to the client SDK as
its secret. Webhooks carry a base64 HMAC-SHA256 of the raw body in
``x-webhook-signature``.
"""
from __future__ import annotations

import json
import uuid
from decimal import Decimal
from typing import Any, Optional

from application.dtos.payments import PaymentIntent, RefundResult, WebhookEvent
from domain.payment.entity import Currency, PaymentMethod, Provider, WebhookEventKind
from infrastructure.external.payments.base import BasePaymentClient


CASHFREE_HOSTS = {
    "sandbox": "https://sandbox.cashfree.com/pg",
    "production": "https://api.cashfree.com/pg",
}
CASHFREE_API_VERSION = "2023-08-01"

EVENT_KINDS: dict[str, WebhookEventKind] = {
    "PAYMENT_SUCCESS_WEBHOOK": WebhookEventKind.PAYMENT_SUCCEEDED,
    "PAYMENT_FAILED_WEBHOOK": WebhookEventKind.PAYMENT_FAILED,
    "PAYMENT_USER_DROPPED_WEBHOOK": WebhookEventKind.PAYMENT_FAILED,
    "REFUND_STATUS_WEBHOOK": WebhookEventKind.REFUND_UPDATED,
}

# Order states after which there is nothing left to capture
_FINAL_ORDER_STATES = {"PAID", "EXPIRED", "TERMINATED"}


def _money(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return Decimal(str(value)).quantize(Decimal("0.01"))


class CashfreeClient(BasePaymentClient):
    provider = Provider.CASHFREE
    signature_header = "x-webhook-signature"
    required_credentials = ("api_key", "api_secret")
    signature_encoding = "base64"

    def _base_url(self) -> str:
        creds = self.credentials
        if creds.base_url:
            return creds.base_url
        return CASHFREE_HOSTS.get((creds.mode or "sandbox").lower(), CASHFREE_HOSTS["sandbox"])

    def _default_headers(self) -> dict[str, str]:
        creds = self.credentials
        return {
            "x-client-id": creds.api_key or "",
            "x-client-secret": creds.api_secret or "",
            "x-api-version": CASHFREE_API_VERSION,
        }

    def _intent_from_order(self, order: dict[str, Any], **extra) -> PaymentIntent:
        return PaymentIntent(
            provider_payment_id=str(order["order_id"]),
            status=str(order.get("order_status") or "ACTIVE"),
            amount=_money(order.get("order_amount")),
            currency=order.get("order_currency"),
            metadata=dict(order.get("order_tags") or {}),
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
        order_id = f"order_{uuid.uuid4().hex}"
        tags = {k: str(v) for k, v in (metadata or {}).items()}
        tags["user_id"] = str(user_id)
        if payment_method:
            tags["payment_method"] = payment_method.value
        meta = dict(metadata or {})
        customer = {
            "customer_id": f"user_{user_id}",
            "customer_phone": str(meta.get("customer_phone") or "9999999999"),
        }
        if meta.get("customer_email"):
            customer["customer_email"] = str(meta["customer_email"])

        body: dict[str, Any] = {
            "order_id": order_id,
            "order_amount": float(amount),
            "order_currency": currency.value,
            "customer_details": customer,
            "order_tags": tags,
        }
        if description:
            body["order_note"] = description[:200]

        order = await self._request("POST", "/orders", operation="create_payment", json=body)
        self._log("payment_gateway_created", provider_payment_id=order_id)
        return self._intent_from_order(order, client_secret=order.get("payment_session_id"))

    async def _get_order(self, order_id: str, operation: str) -> dict[str, Any]:
        return await self._request("GET", f"/orders/{order_id}", operation=operation)

    async def capture_payment(self, provider_payment_id: str, amount: Optional[Decimal] = None) -> PaymentIntent:
        order = await self._get_order(provider_payment_id, "capture_payment")
        if order.get("order_status") not in _FINAL_ORDER_STATES:
            capture_amount = amount if amount is not None else _money(order.get("order_amount"))
            await self._request(
                "POST",
                f"/orders/{provider_payment_id}/authorization",
                operation="capture_payment",
                json={"action": "CAPTURE", "amount": float(capture_amount or 0)},
            )
            order = await self._get_order(provider_payment_id, "capture_payment")
        self._log("payment_gateway_captured", provider_payment_id=provider_payment_id, status=order.get("order_status"))
        return self._intent_from_order(order)

    async def refund_payment(
        self,
        provider_payment_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        if amount is None:
            order = await self._get_order(provider_payment_id, "refund_payment")
            amount = _money(order.get("order_amount"))
        refund = await self._request(
            "POST",
            f"/orders/{provider_payment_id}/refunds",
            operation="refund_payment",
            json={
                "refund_id": f"refund_{uuid.uuid4().hex}",
                "refund_amount": float(amount or 0),
                "refund_note": reason or "Customer requested refund",
            },
        )
        self._log("payment_gateway_refunded", provider_payment_id=provider_payment_id, status=refund.get("refund_status"))
        return RefundResult(
            provider_refund_id=str(refund.get("cf_refund_id") or refund.get("refund_id")),
            amount=_money(refund.get("refund_amount")) or Decimal("0"),
            status=str(refund.get("refund_status") or "PENDING"),
        )

    async def get_payment_status(self, provider_payment_id: str) -> PaymentIntent:
        order = await self._get_order(provider_payment_id, "get_payment_status")
        return self._intent_from_order(order)

    def parse_webhook_event(self, raw_payload: bytes) -> WebhookEvent:
        event = json.loads(raw_payload)
        if not isinstance(event, dict) or not event.get("type"):
            raise ValueError("Cashfree webhook body has no type")
        event_type = str(event["type"])
        data = event.get("data") or {}
        order = data.get("order") or {}
        payment = data.get("payment") or {}
        refund = data.get("refund") or {}

        if refund:
            subject_id = refund.get("cf_refund_id") or refund.get("refund_id")
            order_id = refund.get("order_id") or order.get("order_id")
            amount = _money(refund.get("refund_amount"))
            status = refund.get("refund_status")
        else:
            subject_id = payment.get("cf_payment_id") or order.get("order_id")
            order_id = order.get("order_id")
            amount = _money(payment.get("payment_amount") or order.get("order_amount"))
            status = payment.get("payment_status")
        if not subject_id or not order_id:
            raise ValueError("Cashfree webhook body has no order reference")

        error = payment.get("error_details") or {}
        return WebhookEvent(
            id=f"{event_type}:{subject_id}",
            type=event_type,
            data=data,
            kind=EVENT_KINDS.get(event_type),
            provider_payment_id=str(order_id),
            provider_refund_id=str(refund.get("cf_refund_id") or refund.get("refund_id")) if refund else None,
            amount=amount,
            status=status,
            error_code=error.get("error_code"),
            error_message=error.get("error_description"),
        )

import base64
import hashlib
import hmac
import json
import time
from decimal import Decimal

import httpx
import pytest

from core.settings import GatewayCredentials
from domain.payment.entity import Currency, WebhookEventKind
from domain.payment.exceptions import PaymentConfigurationError, PaymentProviderError, PaymentTimeoutError
from infrastructure.external.payments.base import from_minor, to_minor
from infrastructure.external.payments.cashfree_client import CashfreeClient
from infrastructure.external.payments.razorpay_client import RazorpayClient
from infrastructure.external.payments.stripe_client import StripeClient


SECRET = "whsec_unit"


def _hex(body: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _b64(body: bytes, secret: str = SECRET) -> str:
    return base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()


def _stripe_header(body: bytes, secret: str = SECRET, ts: int | None = None) -> str:
    ts = ts or int(time.time())
    signed = f"{ts}.{body.decode()}".encode()
    return f"t={ts},v1={_hex(signed, secret)}"


@pytest.mark.parametrize(
    "amount,currency,minor",
    [
        (Decimal("100.00"), Currency.USD, 10000),
        (Decimal("0.01"), "inr", 1),
        (Decimal("19.995"), Currency.EUR, 2000),
    ],
)
def test_to_minor(amount, currency, minor):
    assert to_minor(amount, currency) == minor


def test_from_minor():
    assert from_minor(4050, "USD") == Decimal("40.50")
    assert from_minor(None, "USD") is None


def test_initialize_requires_credentials():
    with pytest.raises(PaymentConfigurationError):
        RazorpayClient().initialize(GatewayCredentials(api_key="rzp_test"))


# -- Razorpay ---------------------------------------------------------------

RAZORPAY_CAPTURED = json.dumps({
    "event": "payment.captured",
    "payload": {
        "payment": {
            "entity": {
                "id": "pay_29QQoUBi66xm2f",
                "order_id": "order_9A33XWu170gUtm",
                "amount": 50000,
                "currency": "INR",
                "status": "captured",
            }
        }
    },
}).encode()


def test_razorpay_signature():
    client = RazorpayClient()
    assert client.verify_webhook(RAZORPAY_CAPTURED, _hex(RAZORPAY_CAPTURED), SECRET)
    assert not client.verify_webhook(RAZORPAY_CAPTURED, _hex(RAZORPAY_CAPTURED, "other"), SECRET)
    assert not client.verify_webhook(RAZORPAY_CAPTURED, _hex(RAZORPAY_CAPTURED), None)
    assert not client.verify_webhook(RAZORPAY_CAPTURED, None, SECRET)


def test_razorpay_parse_payment_event():
    event = RazorpayClient().parse_webhook_event(RAZORPAY_CAPTURED)
    assert event.id == "payment.captured:pay_29QQoUBi66xm2f"
    assert event.kind == WebhookEventKind.PAYMENT_SUCCEEDED
    assert event.provider_payment_id == "order_9A33XWu170gUtm"
    assert event.amount == Decimal("500.00")


def test_razorpay_parse_rejects_garbage():
    with pytest.raises(ValueError):
        RazorpayClient().parse_webhook_event(b'{"payload": {}}')


def _razorpay(handler) -> RazorpayClient:
    client = RazorpayClient(transport=httpx.MockTransport(handler))
    client.initialize(GatewayCredentials(api_key="rzp_test", api_secret="s3cret"))
    return client


@pytest.mark.asyncio
async def test_razorpay_create_order():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(
            200,
            json={"id": "order_1", "amount": 12345, "currency": "INR", "status": "created", "notes": {}},
        )

    client = _razorpay(handler)
    intent = await client.create_payment(amount=Decimal("123.45"), currency=Currency.INR, user_id=7)
    await client.aclose()

    assert seen["path"] == "/v1/orders"
    assert seen["body"]["amount"] == 12345
    assert seen["body"]["notes"]["user_id"] == "7"
    assert seen["auth"].startswith("Basic ")
    assert intent.provider_payment_id == "order_1"
    assert intent.client_secret == "order_1"
    assert intent.amount == Decimal("123.45")


@pytest.mark.asyncio
async def test_razorpay_error_response():
    def handler(request):
        return httpx.Response(
            400, json={"error": {"code": "BAD_REQUEST_ERROR", "description": "amount too small"}}
        )

    client = _razorpay(handler)
    with pytest.raises(PaymentProviderError) as exc_info:
        await client.create_payment(amount=Decimal("0.10"), currency=Currency.INR, user_id=1)
    assert exc_info.value.message == "amount too small"


@pytest.mark.asyncio
async def test_razorpay_read_timeout_is_unknown_outcome():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    client = _razorpay(handler)
    with pytest.raises(PaymentTimeoutError):
        await client.get_payment_status("order_1")


@pytest.mark.asyncio
async def test_razorpay_refund_uses_latest_attempt():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/payments"):
            return httpx.Response(200, json={"items": [
                {"id": "pay_old", "status": "failed", "currency": "INR", "created_at": 1},
                {"id": "pay_new", "status": "captured", "currency": "INR", "created_at": 2},
            ]})
        assert request.url.path == "/v1/payments/pay_new/refund"
        return httpx.Response(200, json={"id": "rfnd_1", "amount": 5000, "status": "processed"})

    client = _razorpay(handler)
    result = await client.refund_payment("order_1", Decimal("50.00"))
    assert result.provider_refund_id == "rfnd_1"
    assert result.amount == Decimal("50.00")
    assert result.status == "processed"


# -- Cashfree ---------------------------------------------------------------

CASHFREE_SUCCESS = json.dumps({
    "type": "PAYMENT_SUCCESS_WEBHOOK",
    "data": {
        "order": {"order_id": "order_cf_1", "order_amount": 250.0},
        "payment": {"cf_payment_id": 885, "payment_status": "SUCCESS", "payment_amount": 250.0},
    },
}).encode()


def test_cashfree_signature_is_base64():
    client = CashfreeClient()
    assert client.verify_webhook(CASHFREE_SUCCESS, _b64(CASHFREE_SUCCESS), SECRET)
    assert not client.verify_webhook(CASHFREE_SUCCESS, _hex(CASHFREE_SUCCESS), SECRET)


def test_cashfree_parse_refund_event():
    body = json.dumps({
        "type": "REFUND_STATUS_WEBHOOK",
        "data": {
            "refund": {
                "cf_refund_id": "cf_rf_9",
                "order_id": "order_cf_1",
                "refund_amount": 20,
                "refund_status": "SUCCESS",
            }
        },
    }).encode()
    event = CashfreeClient().parse_webhook_event(body)
    assert event.kind == WebhookEventKind.REFUND_UPDATED
    assert event.provider_payment_id == "order_cf_1"
    assert event.provider_refund_id == "cf_rf_9"
    assert event.amount == Decimal("20.00")


def test_cashfree_parse_payment_event():
    event = CashfreeClient().parse_webhook_event(CASHFREE_SUCCESS)
    assert event.id == "PAYMENT_SUCCESS_WEBHOOK:885"
    assert event.kind == WebhookEventKind.PAYMENT_SUCCEEDED
    assert event.status == "SUCCESS"


# -- Stripe -----------------------------------------------------------------

STRIPE_SUCCEEDED = json.dumps({
    "id": "evt_1",
    "type": "payment_intent.succeeded",
    "data": {
        "object": {
            "id": "pi_123",
            "object": "payment_intent",
            "amount": 10000,
            "amount_received": 10000,
            "currency": "usd",
            "status": "succeeded",
        }
    },
}).encode()


def test_stripe_signature_header():
    client = StripeClient()
    assert client.verify_webhook(STRIPE_SUCCEEDED, _stripe_header(STRIPE_SUCCEEDED), SECRET)
    assert not client.verify_webhook(STRIPE_SUCCEEDED, _stripe_header(STRIPE_SUCCEEDED, "nope"), SECRET)
    assert not client.verify_webhook(STRIPE_SUCCEEDED, "garbage", SECRET)


def test_stripe_signature_outside_tolerance():
    client = StripeClient(tolerance_seconds=60)
    old = _stripe_header(STRIPE_SUCCEEDED, ts=int(time.time()) - 3600)
    assert not client.verify_webhook(STRIPE_SUCCEEDED, old, SECRET)


def test_stripe_parse_payment_event():
    event = StripeClient().parse_webhook_event(STRIPE_SUCCEEDED)
    assert event.id == "evt_1"
    assert event.kind == WebhookEventKind.PAYMENT_SUCCEEDED
    assert event.provider_payment_id == "pi_123"
    assert event.amount == Decimal("100.00")


def test_stripe_parse_refund_event():
    body = json.dumps({
        "id": "evt_2",
        "type": "refund.updated",
        "data": {"object": {"id": "re_1", "object": "refund", "payment_intent": "pi_123",
                            "amount": 2500, "currency": "usd", "status": "succeeded"}},
    }).encode()
    event = StripeClient().parse_webhook_event(body)
    assert event.kind == WebhookEventKind.REFUND_UPDATED
    assert event.provider_refund_id == "re_1"
    assert event.provider_payment_id == "pi_123"
    assert event.amount == Decimal("25.00")


def test_stripe_parse_unmapped_type():
    body = json.dumps({"id": "evt_3", "type": "customer.created", "data": {"object": {}}}).encode()
    assert StripeClient().parse_webhook_event(body).kind is None

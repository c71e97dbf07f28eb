import base64
import hashlib
import hmac
import json
from decimal import Decimal

import pytest
from sqlalchemy import select

from application.dtos.payments import AuditAction, CreatePayment, RefundPaymentRequest
from application.services.webhook_service import WebhookIngestionService
from core.settings import GatewayCredentials, PaymentSettings
from domain.payment.entity import Currency, PaymentStatus, Provider, RefundStatus, WebhookEventKind
from domain.payment.exceptions import PaymentSignatureError, WebhookPayloadException
from infrastructure.models import WebhookEventModel
from infrastructure.external.payments import PaymentGatewaySelector
from infrastructure.external.payments.stripe_client import StripeClient
from tests.conftest import VALID_SIGNATURE, FakeGatewaySource, webhook_body


async def _rows(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(WebhookEventModel).order_by(WebhookEventModel.received_at))
        return list(result.scalars().all())


async def _payment(payment_service, owner, *, capture=False):
    created = await payment_service.create_payment(
        owner, CreatePayment(amount=Decimal("100.00"), currency=Currency.USD)
    )
    if capture:
        await payment_service.capture_payment(created.payment.id, owner)
    return created.payment


def _succeeded(event_id, provider_payment_id):
    return webhook_body(
        id=event_id,
        type="payment_intent.succeeded",
        kind=WebhookEventKind.PAYMENT_SUCCEEDED.value,
        provider_payment_id=provider_payment_id,
    )


@pytest.mark.asyncio
async def test_duplicate_delivery_applies_once(payment_service, webhook_service, owner, audit, session_factory):
    payment = await _payment(payment_service, owner)
    body = _succeeded("evt_1", payment.provider_payment_id)

    first = await webhook_service.ingest(Provider.STRIPE, body, VALID_SIGNATURE)
    second = await webhook_service.ingest("stripe", body, VALID_SIGNATURE)

    assert first.duplicate is False
    assert second.duplicate is True
    assert second.event_id == "evt_1"
    current = await payment_service.get_payment(payment.id, owner)
    assert current.status == PaymentStatus.SUCCEEDED
    assert audit.actions().count(AuditAction.PAYMENT_WEBHOOK_APPLIED) == 1

    rows = await _rows(session_factory)
    assert len(rows) == 1
    assert rows[0].processed is True
    assert rows[0].payment_id == payment.id


@pytest.mark.asyncio
async def test_bad_signature_is_logged_and_rejected(webhook_service, session_factory):
    with pytest.raises(PaymentSignatureError):
        await webhook_service.ingest(Provider.STRIPE, _succeeded("evt_2", "pi_x"), "forged")

    rows = await _rows(session_factory)
    assert len(rows) == 1
    assert rows[0].event_id is None
    assert rows[0].signature_verified is False
    assert rows[0].processed is False


@pytest.mark.asyncio
async def test_missing_secret_rejects_everything(uow_factory, gateway, audit):
    service = WebhookIngestionService(
        uow_factory=uow_factory, gateways=FakeGatewaySource(gateway, secret=None), audit=audit
    )
    with pytest.raises(PaymentSignatureError):
        await service.ingest(Provider.STRIPE, _succeeded("evt_3", "pi_x"), VALID_SIGNATURE)


@pytest.mark.asyncio
async def test_unparsable_body(webhook_service, session_factory):
    with pytest.raises(WebhookPayloadException):
        await webhook_service.ingest(Provider.STRIPE, b"{not json", VALID_SIGNATURE)

    rows = await _rows(session_factory)
    assert rows[0].signature_verified is True
    assert rows[0].event_id is None


@pytest.mark.asyncio
async def test_unknown_payment_is_acknowledged(webhook_service, audit, session_factory):
    ack = await webhook_service.ingest(Provider.STRIPE, _succeeded("evt_4", "pi_nowhere"), VALID_SIGNATURE)

    assert ack.duplicate is False
    assert "pi_nowhere" in ack.message
    assert audit.actions() == []
    rows = await _rows(session_factory)
    assert rows[0].processed is True


@pytest.mark.asyncio
async def test_unmapped_event_type_is_ignored(webhook_service):
    body = webhook_body(id="evt_5", type="customer.created")
    ack = await webhook_service.ingest(Provider.STRIPE, body, VALID_SIGNATURE)
    assert ack.message == "ignored event type customer.created"


@pytest.mark.asyncio
async def test_out_of_order_success_after_refund_is_stale(payment_service, webhook_service, owner):
    payment = await _payment(payment_service, owner, capture=True)
    await payment_service.refund_payment(payment.id, owner, RefundPaymentRequest(amount=Decimal("40.00")))

    ack = await webhook_service.ingest(
        Provider.STRIPE, _succeeded("evt_6", payment.provider_payment_id), VALID_SIGNATURE
    )
    assert ack.message.startswith("stale event")
    current = await payment_service.get_payment(payment.id, owner)
    assert current.status == PaymentStatus.PARTIALLY_REFUNDED
    assert current.refunded_amount == Decimal("40.00")


@pytest.mark.asyncio
async def test_failure_event_records_error(payment_service, webhook_service, owner):
    payment = await _payment(payment_service, owner)
    body = webhook_body(
        id="evt_7",
        type="payment_intent.payment_failed",
        kind=WebhookEventKind.PAYMENT_FAILED.value,
        provider_payment_id=payment.provider_payment_id,
        error_code="card_declined",
        error_message="Your card was declined.",
    )
    await webhook_service.ingest(Provider.STRIPE, body, VALID_SIGNATURE)

    current = await payment_service.get_payment(payment.id, owner)
    assert current.status == PaymentStatus.FAILED
    assert current.error_code == "card_declined"


@pytest.mark.asyncio
async def test_success_after_failure_is_a_conflict(payment_service, webhook_service, gateway, owner):
    gateway.create_status = "failed"
    payment = await _payment(payment_service, owner)

    ack = await webhook_service.ingest(
        Provider.STRIPE, _succeeded("evt_8", payment.provider_payment_id), VALID_SIGNATURE
    )
    assert ack.message.startswith("conflict")
    current = await payment_service.get_payment(payment.id, owner)
    assert current.status == PaymentStatus.FAILED


@pytest.mark.asyncio
async def test_provider_initiated_refund_is_recorded(payment_service, webhook_service, owner):
    payment = await _payment(payment_service, owner, capture=True)
    body = webhook_body(
        id="evt_9",
        type="charge.refunded",
        kind=WebhookEventKind.REFUND_UPDATED.value,
        provider_payment_id=payment.provider_payment_id,
        provider_refund_id="re_dashboard",
        amount="25.00",
        status="succeeded",
    )
    await webhook_service.ingest(Provider.STRIPE, body, VALID_SIGNATURE)

    current = await payment_service.get_payment(payment.id, owner)
    assert current.status == PaymentStatus.PARTIALLY_REFUNDED
    assert current.refunded_amount == Decimal("25.00")
    assert [r.provider_refund_id for r in current.refunds] == ["re_dashboard"]
    assert current.refunds[0].reason == "provider initiated"


@pytest.mark.asyncio
async def test_refund_webhook_settles_pending_refund(payment_service, webhook_service, gateway, owner):
    payment = await _payment(payment_service, owner, capture=True)
    gateway.refund_status = "pending"
    outcome = await payment_service.refund_payment(
        payment.id, owner, RefundPaymentRequest(amount=Decimal("10.00"))
    )
    body = webhook_body(
        id="evt_10",
        type="refund.updated",
        kind=WebhookEventKind.REFUND_UPDATED.value,
        provider_payment_id=payment.provider_payment_id,
        provider_refund_id=outcome.refund.provider_refund_id,
        amount="10.00",
        status="succeeded",
    )
    await webhook_service.ingest(Provider.STRIPE, body, VALID_SIGNATURE)

    current = await payment_service.get_payment(payment.id, owner)
    assert current.refunds[0].status == RefundStatus.SUCCEEDED
    assert current.refunded_amount == Decimal("10.00")


@pytest.mark.asyncio
async def test_processing_error_leaves_row_for_redelivery(
    payment_service, webhook_service, owner, session_factory, monkeypatch
):
    payment = await _payment(payment_service, owner)
    body = _succeeded("evt_11", payment.provider_payment_id)

    async def boom(self, uow, payment, event):
        raise RuntimeError("database went away")

    monkeypatch.setitem(WebhookIngestionService._handlers, WebhookEventKind.PAYMENT_SUCCEEDED, boom)
    with pytest.raises(RuntimeError):
        await webhook_service.ingest(Provider.STRIPE, body, VALID_SIGNATURE)

    rows = await _rows(session_factory)
    assert rows[0].processed is False
    assert rows[0].error_message == "database went away"

    monkeypatch.undo()
    ack = await webhook_service.ingest(Provider.STRIPE, body, VALID_SIGNATURE)
    assert ack.duplicate is False
    current = await payment_service.get_payment(payment.id, owner)
    assert current.status == PaymentStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_non_object_payload_is_rejected_as_unparsable(webhook_service, gateway, session_factory, monkeypatch):
    monkeypatch.setattr(gateway, "parse_webhook_event", StripeClient().parse_webhook_event)
    body = json.dumps({"id": "evt_12", "type": "payment_intent.succeeded", "data": ["not", "an", "object"]}).encode()

    with pytest.raises(WebhookPayloadException):
        await webhook_service.ingest(Provider.STRIPE, body, VALID_SIGNATURE)

    rows = await _rows(session_factory)
    assert len(rows) == 1
    assert rows[0].signature_verified is True
    assert rows[0].error_message.startswith("unparsable payload")


CASHFREE_BODY = json.dumps({
    "type": "PAYMENT_SUCCESS_WEBHOOK",
    "data": {
        "order": {"order_id": "order_cf_77", "order_amount": 10},
        "payment": {"cf_payment_id": 77, "payment_status": "SUCCESS", "payment_amount": 10},
    },
}).encode()


def _selector(cashfree: GatewayCredentials) -> PaymentGatewaySelector:
    settings = PaymentSettings(
        active_provider=Provider.STRIPE,
        stripe=GatewayCredentials(api_key="sk_test", webhook_secret="whsec_s"),
        cashfree=cashfree,
    )
    return PaymentGatewaySelector(settings)


@pytest.mark.asyncio
async def test_unconfigured_gateway_rejects_and_logs(uow_factory, audit, session_factory):
    service = WebhookIngestionService(
        uow_factory=uow_factory, gateways=_selector(GatewayCredentials()), audit=audit
    )

    with pytest.raises(PaymentSignatureError):
        await service.ingest("cashfree", CASHFREE_BODY, "sig")

    rows = await _rows(session_factory)
    assert len(rows) == 1
    assert rows[0].provider == Provider.CASHFREE.value
    assert rows[0].signature_verified is False
    assert rows[0].error_message == "webhook secret not configured"


@pytest.mark.asyncio
async def test_webhook_secret_alone_is_enough_to_verify(uow_factory, audit, session_factory):
    secret = "cf_webhook_secret"
    service = WebhookIngestionService(
        uow_factory=uow_factory,
        gateways=_selector(GatewayCredentials(webhook_secret=secret)),
        audit=audit,
    )
    signature = base64.b64encode(hmac.new(secret.encode(), CASHFREE_BODY, hashlib.sha256).digest()).decode()

    ack = await service.ingest("cashfree", CASHFREE_BODY, signature)

    assert ack.event_id == "PAYMENT_SUCCESS_WEBHOOK:77"
    assert "order_cf_77" in ack.message
    rows = await _rows(session_factory)
    assert rows[0].processed is True

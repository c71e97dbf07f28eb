from decimal import Decimal

import pytest

from application.dtos.payments import AuditAction, CreatePayment, RefundPaymentRequest
from application.services.payment_service import PaymentApplicationService
from application.services.webhook_service import WebhookIngestionService
from domain.common.exceptions import ForbiddenException
from domain.payment.entity import Currency, PaymentStatus, RefundStatus, WebhookEventKind
from domain.payment.exceptions import (
    PaymentAlreadyCapturedException,
    PaymentConcurrencyException,
    PaymentNotFoundException,
    PaymentNotRefundableException,
    PaymentOwnershipException,
    PaymentProviderError,
    PaymentTimeoutError,
    RefundExceedsPaymentException,
)
from infrastructure.repositories.payment_repository import SQLAlchemyPaymentRepository
from tests.conftest import VALID_SIGNATURE, BrokenAudit, webhook_body


async def _create(service, requester, amount="100.00"):
    created = await service.create_payment(
        requester, CreatePayment(amount=Decimal(amount), currency=Currency.USD)
    )
    return created.payment


@pytest.mark.asyncio
async def test_create_capture_refund_lifecycle(payment_service, owner, audit):
    created = await payment_service.create_payment(
        owner, CreatePayment(amount=Decimal("100.00"), currency=Currency.USD)
    )
    assert created.client_secret == "cs_test"
    assert created.payment.status == PaymentStatus.PENDING
    payment_id = created.payment.id

    captured = await payment_service.capture_payment(payment_id, owner)
    assert captured.status == PaymentStatus.SUCCEEDED
    assert captured.captured_at is not None

    first = await payment_service.refund_payment(
        payment_id, owner, RefundPaymentRequest(amount=Decimal("40.00"))
    )
    assert first.payment.status == PaymentStatus.PARTIALLY_REFUNDED
    assert first.payment.refunded_amount == Decimal("40.00")
    assert first.refund.status == RefundStatus.SUCCEEDED

    second = await payment_service.refund_payment(
        payment_id, owner, RefundPaymentRequest(amount=Decimal("60.00"))
    )
    assert second.payment.status == PaymentStatus.REFUNDED
    assert second.payment.refunded_amount == Decimal("100.00")
    assert len(second.payment.refunds) == 2

    with pytest.raises(PaymentNotRefundableException):
        await payment_service.refund_payment(
            payment_id, owner, RefundPaymentRequest(amount=Decimal("1.00"))
        )

    assert audit.actions() == [
        AuditAction.PAYMENT_CREATED,
        AuditAction.PAYMENT_CAPTURED,
        AuditAction.PAYMENT_REFUNDED,
        AuditAction.PAYMENT_REFUNDED,
    ]
    assert {e.resource for e in audit.entries} == {"payments"}
    assert {e.resource_id for e in audit.entries} == {payment_id}


@pytest.mark.asyncio
async def test_create_with_immediate_success(payment_service, gateway, owner):
    gateway.create_status = "succeeded"
    payment = await _create(payment_service, owner)
    assert payment.status == PaymentStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_full_refund_without_amount(payment_service, owner):
    payment = await _create(payment_service, owner, "25.50")
    await payment_service.capture_payment(payment.id, owner)

    outcome = await payment_service.refund_payment(payment.id, owner, RefundPaymentRequest())
    assert outcome.refund.amount == Decimal("25.50")
    assert outcome.payment.status == PaymentStatus.REFUNDED


@pytest.mark.asyncio
async def test_double_capture_is_rejected(payment_service, gateway, owner):
    payment = await _create(payment_service, owner)
    await payment_service.capture_payment(payment.id, owner)

    with pytest.raises(PaymentAlreadyCapturedException):
        await payment_service.capture_payment(payment.id, owner)
    assert [c[0] for c in gateway.calls].count("capture") == 1


@pytest.mark.asyncio
async def test_capture_timeout_leaves_payment_untouched(payment_service, gateway, owner):
    payment = await _create(payment_service, owner)
    gateway.capture_error = PaymentTimeoutError("timed out", provider="STRIPE", operation="capture")

    with pytest.raises(PaymentTimeoutError):
        await payment_service.capture_payment(payment.id, owner)

    current = await payment_service.get_payment(payment.id, owner)
    assert current.status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_refund_rejected_by_provider_stores_nothing(payment_service, gateway, owner):
    payment = await _create(payment_service, owner)
    await payment_service.capture_payment(payment.id, owner)
    gateway.refund_status = "failed"

    with pytest.raises(PaymentProviderError):
        await payment_service.refund_payment(payment.id, owner, RefundPaymentRequest(amount=Decimal("10.00")))

    current = await payment_service.get_payment(payment.id, owner)
    assert current.status == PaymentStatus.SUCCEEDED
    assert current.refunds == []


@pytest.mark.asyncio
async def test_refund_over_remaining_never_reaches_gateway(payment_service, gateway, owner):
    payment = await _create(payment_service, owner)
    await payment_service.capture_payment(payment.id, owner)

    with pytest.raises(RefundExceedsPaymentException):
        await payment_service.refund_payment(payment.id, owner, RefundPaymentRequest(amount=Decimal("100.01")))
    assert "refund" not in [c[0] for c in gateway.calls]


@pytest.mark.asyncio
async def test_pending_refund_counts_towards_total(payment_service, gateway, owner):
    payment = await _create(payment_service, owner)
    await payment_service.capture_payment(payment.id, owner)
    gateway.refund_status = "pending"

    outcome = await payment_service.refund_payment(
        payment.id, owner, RefundPaymentRequest(amount=Decimal("30.00"))
    )
    assert outcome.refund.status == RefundStatus.PENDING
    assert outcome.payment.refunded_amount == Decimal("30.00")


@pytest.mark.asyncio
async def test_ownership_rules(payment_service, owner, stranger, admin):
    payment = await _create(payment_service, owner)

    with pytest.raises(PaymentOwnershipException):
        await payment_service.get_payment(payment.id, stranger)
    with pytest.raises(PaymentOwnershipException):
        await payment_service.capture_payment(payment.id, stranger)
    # privileged users may read but not act on someone else's payment
    assert (await payment_service.get_payment(payment.id, admin)).id == payment.id
    with pytest.raises(PaymentOwnershipException):
        await payment_service.capture_payment(payment.id, admin)


@pytest.mark.asyncio
async def test_unknown_payment(payment_service, owner):
    with pytest.raises(PaymentNotFoundException):
        await payment_service.get_payment("missing", owner)


@pytest.mark.asyncio
async def test_list_payments_scopes_by_owner(payment_service, owner, stranger, admin):
    await _create(payment_service, owner, "10.00")
    await _create(payment_service, owner, "20.00")
    await _create(payment_service, stranger, "30.00")

    items, total = await payment_service.list_payments(owner, page=1, size=10)
    assert total == 2
    assert {p.user_id for p in items} == {owner.id}

    items, total = await payment_service.list_payments(admin, page=1, size=2, all_users=True)
    assert total == 3
    assert len(items) == 2

    with pytest.raises(ForbiddenException):
        await payment_service.list_payments(owner, all_users=True)


@pytest.mark.asyncio
async def test_reconcile_moves_payment_forward(payment_service, gateway, owner, audit):
    payment = await _create(payment_service, owner)
    gateway.reported_status = "succeeded"

    synced = await payment_service.reconcile_payment(payment.id, owner)
    assert synced.status == PaymentStatus.SUCCEEDED
    assert AuditAction.PAYMENT_RECONCILED in audit.actions()

    # a second sync with the same answer is a no-op
    audit.entries.clear()
    again = await payment_service.reconcile_payment(payment.id, owner)
    assert again.status == PaymentStatus.SUCCEEDED
    assert audit.actions() == []


@pytest.mark.asyncio
async def test_reconcile_conflict_keeps_local_state(payment_service, gateway, owner):
    gateway.create_status = "failed"
    payment = await _create(payment_service, owner)
    assert payment.status == PaymentStatus.FAILED

    gateway.reported_status = "succeeded"
    synced = await payment_service.reconcile_payment(payment.id)
    assert synced.status == PaymentStatus.FAILED


@pytest.mark.asyncio
async def test_reconcile_stale_batch(payment_service, gateway, owner):
    await _create(payment_service, owner, "10.00")
    await _create(payment_service, owner, "20.00")
    gateway.reported_status = "processing"

    # negative window puts the cutoff in the future so both rows qualify
    summary = await payment_service.reconcile_stale(older_than_minutes=-1, limit=10)
    assert summary == {"checked": 2, "updated": 2, "failed": 0}

    gateway.reported_status = "pending"
    summary = await payment_service.reconcile_stale(older_than_minutes=-1, limit=10)
    assert summary == {"checked": 2, "updated": 0, "failed": 0}


@pytest.mark.asyncio
async def test_audit_outage_does_not_fail_operations(uow_factory, gateways, gateway, owner):
    audit = BrokenAudit()
    service = PaymentApplicationService(uow_factory=uow_factory, gateways=gateways, audit=audit)
    webhooks = WebhookIngestionService(uow_factory=uow_factory, gateways=gateways, audit=audit)

    payment = await _create(service, owner)
    await service.capture_payment(payment.id, owner)
    outcome = await service.refund_payment(payment.id, owner, RefundPaymentRequest(amount=Decimal("40.00")))
    assert outcome.payment.status == PaymentStatus.PARTIALLY_REFUNDED

    body = webhook_body(
        id="evt_refund_dashboard",
        type="charge.refunded",
        kind=WebhookEventKind.REFUND_UPDATED.value,
        provider_payment_id=payment.provider_payment_id,
        provider_refund_id="re_dashboard",
        amount="10.00",
        status="succeeded",
    )
    ack = await webhooks.ingest(gateway.provider, body, VALID_SIGNATURE)
    assert ack.duplicate is False

    current = await service.get_payment(payment.id, owner)
    assert current.refunded_amount == Decimal("50.00")
    assert audit.attempts == 4


@pytest.mark.asyncio
async def test_refund_retries_after_version_conflict(payment_service, owner, monkeypatch):
    payment = await _create(payment_service, owner)
    await payment_service.capture_payment(payment.id, owner)

    original_update = SQLAlchemyPaymentRepository.update
    attempts = []

    async def update_losing_first_race(self, entity):
        attempts.append(entity.id)
        if len(attempts) == 1:
            raise PaymentConcurrencyException(entity.id)
        return await original_update(self, entity)

    monkeypatch.setattr(SQLAlchemyPaymentRepository, "update", update_losing_first_race)
    outcome = await payment_service.refund_payment(
        payment.id, owner, RefundPaymentRequest(amount=Decimal("40.00"))
    )
    monkeypatch.undo()

    assert len(attempts) == 2
    assert outcome.payment.refunded_amount == Decimal("40.00")
    current = await payment_service.get_payment(payment.id, owner)
    # the refund row written by the losing attempt was rolled back
    assert len(current.refunds) == 1
    assert current.refunded_amount == Decimal("40.00")
    assert current.status == PaymentStatus.PARTIALLY_REFUNDED


@pytest.mark.asyncio
async def test_capture_gives_up_after_repeated_conflicts(payment_service, gateway, owner, monkeypatch):
    payment = await _create(payment_service, owner)

    async def always_stale(self, entity):
        raise PaymentConcurrencyException(entity.id)

    monkeypatch.setattr(SQLAlchemyPaymentRepository, "update", always_stale)
    with pytest.raises(PaymentConcurrencyException):
        await payment_service.capture_payment(payment.id, owner)
    monkeypatch.undo()

    assert [c[0] for c in gateway.calls].count("capture") == 1
    current = await payment_service.get_payment(payment.id, owner)
    assert current.status == PaymentStatus.PENDING

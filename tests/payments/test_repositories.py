from decimal import Decimal

import pytest

from domain.payment.entity import (
    Currency,
    Payment,
    PaymentStatus,
    Provider,
    Refund,
    RefundStatus,
    WebhookEventLog,
)
from domain.payment.exceptions import PaymentConcurrencyException, WebhookEventAlreadyRecordedException


def _event(row_id, event_id):
    return WebhookEventLog(
        id=row_id,
        provider=Provider.RAZORPAY,
        event_type="payment.captured",
        event_id=event_id,
        raw_payload="{}",
        signature_verified=True,
    )


def _payment(payment_id="pay_1"):
    return Payment(
        id=payment_id,
        user_id=1,
        provider=Provider.STRIPE,
        provider_payment_id=f"pi_{payment_id}",
        amount=Decimal("50.00"),
        currency=Currency.USD,
        status=PaymentStatus.SUCCEEDED,
    )


@pytest.mark.asyncio
async def test_webhook_event_id_is_unique_per_provider(uow_factory):
    async with uow_factory() as uow:
        await uow.webhook_event_repository.add(_event("row-1", "evt_1"))

    with pytest.raises(WebhookEventAlreadyRecordedException):
        async with uow_factory() as uow:
            await uow.webhook_event_repository.add(_event("row-2", "evt_1"))

    # rows without an event id never collide
    async with uow_factory() as uow:
        await uow.webhook_event_repository.add(_event("row-3", None))
        await uow.webhook_event_repository.add(_event("row-4", None))

    async with uow_factory(readonly=True) as uow:
        found = await uow.webhook_event_repository.get_by_event_id("razorpay", "evt_1")
    assert found.id == "row-1"


@pytest.mark.asyncio
async def test_refunds_load_with_payment(uow_factory):
    async with uow_factory() as uow:
        payment = await uow.payment_repository.create(_payment())
        refund = Refund(
            id="r1",
            payment_id=payment.id,
            provider_refund_id="re_1",
            amount=Decimal("20.00"),
            status=RefundStatus.SUCCEEDED,
        )
        payment.add_refund(refund)
        await uow.refund_repository.create(refund)
        await uow.payment_repository.update(payment)

    async with uow_factory(readonly=True) as uow:
        loaded = await uow.payment_repository.get_by_provider_ref(Provider.STRIPE, "pi_pay_1")
        refunds = await uow.refund_repository.list_by_payment("pay_1")

    assert loaded.status == PaymentStatus.PARTIALLY_REFUNDED
    assert loaded.refunded_amount == Decimal("20.00")
    assert [r.id for r in loaded.refunds] == ["r1"]
    assert [r.provider_refund_id for r in refunds] == ["re_1"]


@pytest.mark.asyncio
async def test_stale_version_is_rejected(uow_factory):
    async with uow_factory() as uow:
        await uow.payment_repository.create(_payment("pay_v"))

    async with uow_factory(readonly=True) as uow:
        stale = await uow.payment_repository.get_by_id("pay_v")

    async with uow_factory() as uow:
        fresh = await uow.payment_repository.get_for_update("pay_v")
        fresh.apply_refund(Decimal("5.00"))
        await uow.payment_repository.update(fresh)

    stale.apply_refund(Decimal("5.00"))
    with pytest.raises(PaymentConcurrencyException):
        async with uow_factory() as uow:
            await uow.payment_repository.update(stale)

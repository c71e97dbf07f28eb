"""
Webhook ingestion pipeline.

receive -> verify signature on the raw bytes -> parse -> dedupe and log
-> apply under the payment row lock -> finalize.

The event log row is committed before any side effect so a crash between
steps leaves an unprocessed row that the gateway's redelivery picks up.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Tuple

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random

from application.dtos.payments import AuditAction, AuditEntry, WebhookAck, WebhookEvent
from application.ports.audit import AuditLogger
from application.ports.payment_gateway import GatewaySource
from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import (
    Payment,
    PaymentStatus,
    Provider,
    Refund,
    RefundStatus,
    WebhookEventKind,
    WebhookEventLog,
    map_refund_status,
)
from domain.payment.exceptions import (
    InvalidPaymentTransitionException,
    PaymentConcurrencyException,
    PaymentSignatureError,
    WebhookEventAlreadyRecordedException,
    WebhookPayloadException,
)


logger = get_logger(__name__)

LOCKED_TX_ATTEMPTS = 3

# kind -> canonical payment status the event reports
_STATUS_BY_KIND: dict[WebhookEventKind, PaymentStatus] = {
    WebhookEventKind.PAYMENT_SUCCEEDED: PaymentStatus.SUCCEEDED,
    WebhookEventKind.PAYMENT_PROCESSING: PaymentStatus.PROCESSING,
    WebhookEventKind.PAYMENT_FAILED: PaymentStatus.FAILED,
    WebhookEventKind.PAYMENT_CANCELLED: PaymentStatus.CANCELLED,
}


def _decode(raw_body: bytes) -> str:
    return raw_body.decode("utf-8", errors="replace")


class WebhookIngestionService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateways: GatewaySource,
        audit: AuditLogger,
    ) -> None:
        self._uow_factory = uow_factory
        self._gateways = gateways
        self._audit_logger = audit

    async def ingest(self, provider: Provider | str, raw_body: bytes, signature: Optional[str]) -> WebhookAck:
        name = Provider.parse(provider)
        secret = self._gateways.webhook_secret_for(name)

        async with self._gateways.for_webhook(name) as gateway:
            if not gateway.verify_webhook(raw_body, signature, secret):
                reason = "signature verification failed" if secret else "webhook secret not configured"
                await self._reject(name, raw_body, signature, verified=False, reason=reason)
                logger.warning("webhook_signature_invalid", provider=name.value, reason=reason)
                raise PaymentSignatureError("Invalid webhook signature", provider=name.value)
            try:
                event = gateway.parse_webhook_event(raw_body)
            except (ValueError, TypeError, KeyError, AttributeError) as exc:
                await self._reject(name, raw_body, signature, verified=True, reason=f"unparsable payload: {exc}")
                logger.warning("webhook_payload_invalid", provider=name.value, error=str(exc))
                raise WebhookPayloadException(name.value, str(exc)) from exc

        log, duplicate = await self._claim(name, event, raw_body, signature)
        if duplicate:
            logger.info("webhook_duplicate_ignored", provider=name.value, event_id=event.id)
            return WebhookAck(duplicate=True, event_id=event.id, message="duplicate")

        try:
            payment, note = await self._run_locked(lambda uow: self._apply(uow, name, event, log.id))
        except Exception as exc:
            await self._record_failure(log.id, exc)
            logger.error(
                "webhook_processing_failed",
                provider=name.value,
                event_id=event.id,
                event_type=event.type,
                exc_info=True,
            )
            raise

        logger.info(
            "webhook_processed",
            provider=name.value,
            event_id=event.id,
            event_type=event.type,
            payment_id=payment.id if payment else None,
            note=note,
        )
        if payment is not None:
            await self._audit(payment, event)
        return WebhookAck(event_id=event.id, message=note)

    # ------------------------------------------------------------------
    # logging and dedupe
    # ------------------------------------------------------------------
    async def _reject(
        self,
        provider: Provider,
        raw_body: bytes,
        signature: Optional[str],
        *,
        verified: bool,
        reason: str,
    ) -> None:
        """Keep a record of a delivery that never reached processing."""
        row = WebhookEventLog(
            id=str(uuid.uuid4()),
            provider=provider,
            event_type="unknown",
            event_id=None,
            raw_payload=_decode(raw_body),
            signature=signature,
            signature_verified=verified,
            error_message=reason[:2000],
        )
        async with self._uow_factory() as uow:
            await uow.webhook_event_repository.add(row)

    async def _claim(
        self,
        provider: Provider,
        event: WebhookEvent,
        raw_body: bytes,
        signature: Optional[str],
    ) -> Tuple[WebhookEventLog, bool]:
        """Return the log row to process and whether the event is a duplicate."""
        async with self._uow_factory() as uow:
            existing = await uow.webhook_event_repository.get_by_event_id(provider, event.id)
            if existing is not None:
                if existing.processed:
                    return existing, True
                logger.info("webhook_reprocessing", provider=provider.value, event_id=event.id)
                return existing, False

        row = WebhookEventLog(
            id=str(uuid.uuid4()),
            provider=provider,
            event_type=event.type,
            event_id=event.id,
            raw_payload=_decode(raw_body),
            signature=signature,
            signature_verified=True,
        )
        try:
            async with self._uow_factory() as uow:
                row = await uow.webhook_event_repository.add(row)
        except WebhookEventAlreadyRecordedException:
            return row, True
        return row, False

    async def _record_failure(self, log_id: str, exc: Exception) -> None:
        message = getattr(exc, "message", None) or str(exc) or type(exc).__name__
        async with self._uow_factory() as uow:
            row = await uow.webhook_event_repository.get_for_update(log_id)
            if row is None:
                return
            row.mark_failed(message)
            await uow.webhook_event_repository.update(row)

    # ------------------------------------------------------------------
    # apply
    # ------------------------------------------------------------------
    async def _run_locked(self, fn: Callable[[AbstractUnitOfWork], Awaitable]):
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(PaymentConcurrencyException),
            stop=stop_after_attempt(LOCKED_TX_ATTEMPTS),
            wait=wait_random(0, 0.05),
            reraise=True,
        ):
            with attempt:
                async with self._uow_factory() as uow:
                    return await fn(uow)
        raise AssertionError("unreachable")  # pragma: no cover

    async def _apply(
        self,
        uow: AbstractUnitOfWork,
        provider: Provider,
        event: WebhookEvent,
        log_id: str,
    ) -> Tuple[Optional[Payment], Optional[str]]:
        log = await uow.webhook_event_repository.get_for_update(log_id)
        if log is None or log.processed:
            # another delivery finished this event while we waited for the lock
            return None, "already processed"

        payment: Optional[Payment] = None
        note: Optional[str] = None
        if event.kind is None:
            note = f"ignored event type {event.type}"
            logger.info("webhook_event_ignored", provider=provider.value, event_type=event.type)
        elif not event.provider_payment_id:
            note = "event carries no payment reference"
        else:
            found = await uow.payment_repository.get_by_provider_ref(provider, event.provider_payment_id)
            if found is None:
                note = f"no local payment for {event.provider_payment_id}"
                logger.warning(
                    "webhook_payment_unknown",
                    provider=provider.value,
                    provider_payment_id=event.provider_payment_id,
                )
            else:
                payment = await uow.payment_repository.get_for_update(found.id)
                handler = self._handlers[event.kind]
                note = await handler(self, uow, payment, event)

        log.mark_processed(payment.id if payment else None, note)
        await uow.webhook_event_repository.update(log)
        return payment, note

    async def _on_status(self, uow: AbstractUnitOfWork, payment: Payment, event: WebhookEvent) -> Optional[str]:
        target = _STATUS_BY_KIND[event.kind]
        before, before_amount = payment.status, payment.amount
        try:
            if target == PaymentStatus.SUCCEEDED:
                payment.mark_captured(target, event.amount)
            else:
                payment.apply_provider_status(target)
        except InvalidPaymentTransitionException:
            logger.error(
                "webhook_transition_conflict",
                payment_id=payment.id,
                local_status=before.value,
                reported_status=target.value,
                event_id=event.id,
            )
            return f"conflict: {before.value} -> {target.value} not allowed"

        failure_recorded = False
        if payment.status == PaymentStatus.FAILED and target == PaymentStatus.FAILED and (event.error_code or event.error_message):
            payment.record_failure(event.error_code, event.error_message)
            failure_recorded = True

        if payment.status != before or payment.amount != before_amount or failure_recorded:
            await uow.payment_repository.update(payment)
            return None
        if payment.is_stale_report(target):
            return f"stale event ({target.value} after {before.value})"
        return None

    async def _on_refund(self, uow: AbstractUnitOfWork, payment: Payment, event: WebhookEvent) -> Optional[str]:
        if not event.provider_refund_id:
            return "refund event carries no refund reference"
        status = map_refund_status(event.status)
        existing = await uow.refund_repository.get_by_provider_refund_id(payment.provider, event.provider_refund_id)

        if existing is not None:
            if existing.settle(status):
                await uow.refund_repository.update(existing)
                if status == RefundStatus.FAILED:
                    # refunded_amount never decreases; the gap is left for an operator
                    logger.error(
                        "refund_failed_after_accept",
                        payment_id=payment.id,
                        refund_id=existing.id,
                        amount=str(existing.amount),
                    )
            return None

        if status != RefundStatus.SUCCEEDED:
            return f"refund {event.provider_refund_id} not yet settled ({status.value})"
        if event.amount is None:
            return "refund event carries no amount"
        if not payment.can_refund() or event.amount > payment.calculate_refundable_amount():
            logger.error(
                "refund_reconciliation_required",
                payment_id=payment.id,
                provider_refund_id=event.provider_refund_id,
                amount=str(event.amount),
                refunded_amount=str(payment.refunded_amount),
            )
            return "refund does not fit the local payment"

        refund = Refund(
            id=str(uuid.uuid4()),
            payment_id=payment.id,
            provider_refund_id=event.provider_refund_id,
            amount=event.amount,
            status=status,
            reason="provider initiated",
        )
        refund.processed_at = datetime.now(timezone.utc)
        payment.add_refund(refund)
        await uow.refund_repository.create(refund)
        await uow.payment_repository.update(payment)
        logger.info(
            "refund_recorded_from_webhook",
            payment_id=payment.id,
            provider_refund_id=event.provider_refund_id,
            amount=str(event.amount),
        )
        return None

    _handlers = {
        WebhookEventKind.PAYMENT_SUCCEEDED: _on_status,
        WebhookEventKind.PAYMENT_PROCESSING: _on_status,
        WebhookEventKind.PAYMENT_FAILED: _on_status,
        WebhookEventKind.PAYMENT_CANCELLED: _on_status,
        WebhookEventKind.REFUND_UPDATED: _on_refund,
    }

    async def _audit(self, payment: Payment, event: WebhookEvent) -> None:
        try:
            await self._audit_logger.record(
                AuditEntry(
                    action=AuditAction.PAYMENT_WEBHOOK_APPLIED,
                    resource_id=payment.id,
                    user_id=None,
                    details={
                        "provider": payment.provider.value,
                        "event_id": event.id,
                        "event_type": event.type,
                        "status": payment.status.value,
                    },
                )
            )
        except Exception as exc:  # audit never fails the operation
            logger.error("audit_log_failed", action=AuditAction.PAYMENT_WEBHOOK_APPLIED, error=str(exc))

"""
Application service orchestrating payment use-cases.

This class depends only on the application ports and DTOs. Gateways come in
through a `GatewaySource` injected from the composition root (API/tasks),
keeping dependencies one-way.

Every read-modify-write of a payment row runs in its own unit of work with a
row lock, and gateway calls are made before that transaction opens, never
while a lock is held.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random

from application.dtos.payments import (
    AuditAction,
    AuditEntry,
    CreatedPaymentDTO,
    CreatePayment,
    PaymentDTO,
    RefundDTO,
    RefundOutcomeDTO,
    RefundPaymentRequest,
    Requester,
)
from application.ports.audit import AuditLogger
from application.ports.payment_gateway import GatewaySource
from core.logging_config import get_logger
from domain.common.exceptions import BusinessException, ConflictException, ForbiddenException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import (
    Payment,
    PaymentStatus,
    Refund,
    RefundStatus,
    map_provider_status,
    map_refund_status,
)
from domain.payment.exceptions import (
    InvalidPaymentTransitionException,
    PaymentConcurrencyException,
    PaymentNotFoundException,
    PaymentOwnershipException,
    PaymentProviderError,
    PaymentTimeoutError,
)


logger = get_logger(__name__)

T = TypeVar("T")

LOCKED_TX_ATTEMPTS = 3
STALE_STATUSES = [PaymentStatus.PENDING, PaymentStatus.PROCESSING]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentApplicationService:
    """Payment workflows: create, capture, refund, read and reconcile."""

    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateways: GatewaySource,
        audit: AuditLogger,
    ) -> None:
        self._uow_factory = uow_factory
        self._gateways = gateways
        self._audit_logger = audit

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    async def _run_locked(self, fn: Callable[[AbstractUnitOfWork], Awaitable[T]]) -> T:
        """Run `fn` in a fresh transaction, retrying on optimistic version conflicts."""
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

    async def _audit(self, action: str, payment: Payment, user_id: Optional[int], **details) -> None:
        try:
            await self._audit_logger.record(
                AuditEntry(
                    action=action,
                    resource_id=payment.id,
                    user_id=user_id,
                    details={"provider": payment.provider.value, "status": payment.status.value, **details},
                )
            )
        except Exception as exc:  # audit never fails the operation
            logger.error("audit_log_failed", action=action, payment_id=payment.id, error=str(exc))

    async def _load(self, payment_id: str) -> Payment:
        async with self._uow_factory(readonly=True) as uow:
            payment = await uow.payment_repository.get_by_id(payment_id)
        if payment is None:
            raise PaymentNotFoundException(payment_id)
        return payment

    @staticmethod
    def _ensure_owner(payment: Payment, requester: Requester) -> None:
        if not payment.is_owned_by(requester.id):
            raise PaymentOwnershipException(payment.id)

    @staticmethod
    def _ensure_visible(payment: Payment, requester: Requester) -> None:
        if not (requester.is_privileged or payment.is_owned_by(requester.id)):
            raise PaymentOwnershipException(payment.id)

    @staticmethod
    async def _lock(uow: AbstractUnitOfWork, payment_id: str) -> Payment:
        payment = await uow.payment_repository.get_for_update(payment_id)
        if payment is None:
            raise PaymentNotFoundException(payment_id)
        return payment

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------
    async def create_payment(self, requester: Requester, data: CreatePayment) -> CreatedPaymentDTO:
        provider = self._gateways.active_provider
        async with self._gateways.use(provider) as gateway:
            intent = await gateway.create_payment(
                amount=data.amount,
                currency=data.currency,
                user_id=requester.id,
                description=data.description,
                metadata=data.metadata,
                payment_method=data.payment_method,
            )

        payment = Payment(
            id=str(uuid.uuid4()),
            user_id=requester.id,
            provider=provider,
            provider_payment_id=intent.provider_payment_id,
            amount=data.amount,
            currency=data.currency,
            status=PaymentStatus.PENDING,
            payment_method=data.payment_method,
            description=data.description,
            metadata=dict(data.metadata or {}),
        )
        # refund states reported at creation are meaningless and stay PENDING
        payment.apply_provider_status(map_provider_status(intent.status))

        try:
            async with self._uow_factory() as uow:
                payment = await uow.payment_repository.create(payment)
        except Exception:
            logger.error(
                "payment_orphaned_at_provider",
                provider=provider.value,
                provider_payment_id=intent.provider_payment_id,
                user_id=requester.id,
                exc_info=True,
            )
            raise

        logger.info(
            "payment_created",
            payment_id=payment.id,
            provider=provider.value,
            status=payment.status.value,
            amount=str(payment.amount),
            currency=payment.currency.value,
        )
        await self._audit(
            AuditAction.PAYMENT_CREATED,
            payment,
            requester.id,
            amount=str(payment.amount),
            currency=payment.currency.value,
        )
        return CreatedPaymentDTO(payment=PaymentDTO.from_entity(payment), client_secret=intent.client_secret)

    # ------------------------------------------------------------------
    # capture
    # ------------------------------------------------------------------
    async def capture_payment(
        self,
        payment_id: str,
        requester: Requester,
        amount: Optional[Decimal] = None,
    ) -> PaymentDTO:
        payment = await self._load(payment_id)
        self._ensure_owner(payment, requester)
        payment.ensure_capturable()
        payment.validate_capture_amount(amount)

        async with self._gateways.use(payment.provider) as gateway:
            try:
                intent = await gateway.capture_payment(payment.provider_payment_id, amount)
            except PaymentTimeoutError:
                logger.error(
                    "payment_capture_outcome_unknown",
                    payment_id=payment.id,
                    provider=payment.provider.value,
                    provider_payment_id=payment.provider_payment_id,
                )
                raise

        status = map_provider_status(intent.status)
        captured_amount = intent.amount if intent.amount is not None else amount

        async def apply(uow: AbstractUnitOfWork) -> Payment:
            locked = await self._lock(uow, payment_id)
            locked.mark_captured(status, captured_amount)
            return await uow.payment_repository.update(locked)

        payment = await self._run_locked(apply)
        logger.info(
            "payment_captured",
            payment_id=payment.id,
            status=payment.status.value,
            amount=str(payment.amount),
        )
        await self._audit(AuditAction.PAYMENT_CAPTURED, payment, requester.id, amount=str(payment.amount))
        return PaymentDTO.from_entity(payment)

    # ------------------------------------------------------------------
    # refund
    # ------------------------------------------------------------------
    async def refund_payment(
        self,
        payment_id: str,
        requester: Requester,
        data: RefundPaymentRequest,
    ) -> RefundOutcomeDTO:
        payment = await self._load(payment_id)
        self._ensure_owner(payment, requester)
        refund_amount = payment.ensure_refundable(data.amount)

        async with self._gateways.use(payment.provider) as gateway:
            try:
                result = await gateway.refund_payment(payment.provider_payment_id, refund_amount, data.reason)
            except PaymentTimeoutError:
                logger.error(
                    "payment_refund_outcome_unknown",
                    payment_id=payment.id,
                    provider=payment.provider.value,
                    amount=str(refund_amount),
                )
                raise

        refund_status = map_refund_status(result.status)
        if refund_status == RefundStatus.FAILED:
            raise PaymentProviderError(
                "Refund was rejected by the provider",
                provider=payment.provider.value,
                operation="refund",
                details={"provider_refund_id": result.provider_refund_id, "payment_id": payment.id},
            )

        async def apply(uow: AbstractUnitOfWork) -> Tuple[Payment, Refund]:
            locked = await self._lock(uow, payment_id)
            existing = await uow.refund_repository.get_by_provider_refund_id(
                locked.provider, result.provider_refund_id
            )
            if existing is not None:
                # a webhook for the same refund got here first
                return locked, existing
            try:
                locked.ensure_refundable(result.amount)
            except BusinessException as exc:
                logger.error(
                    "refund_reconciliation_required",
                    payment_id=locked.id,
                    provider_refund_id=result.provider_refund_id,
                    amount=str(result.amount),
                    refunded_amount=str(locked.refunded_amount),
                    error=exc.message,
                )
                raise ConflictException(
                    "Refund accepted by provider but no longer fits the payment",
                    error_type="RefundReconciliationRequired",
                    details={"payment_id": locked.id, "provider_refund_id": result.provider_refund_id},
                ) from exc
            refund = Refund(
                id=str(uuid.uuid4()),
                payment_id=locked.id,
                provider_refund_id=result.provider_refund_id,
                amount=result.amount,
                status=refund_status,
                reason=data.reason,
                processed_at=_utcnow() if refund_status == RefundStatus.SUCCEEDED else None,
            )
            locked.add_refund(refund)
            refund = await uow.refund_repository.create(refund)
            locked = await uow.payment_repository.update(locked)
            return locked, refund

        payment, refund = await self._run_locked(apply)
        logger.info(
            "payment_refunded",
            payment_id=payment.id,
            refund_id=refund.id,
            amount=str(refund.amount),
            refund_status=refund.status.value,
            status=payment.status.value,
        )
        await self._audit(
            AuditAction.PAYMENT_REFUNDED,
            payment,
            requester.id,
            refund_id=refund.id,
            amount=str(refund.amount),
        )
        return RefundOutcomeDTO(payment=PaymentDTO.from_entity(payment), refund=RefundDTO.from_entity(refund))

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    async def get_payment(self, payment_id: str, requester: Requester) -> PaymentDTO:
        payment = await self._load(payment_id)
        self._ensure_visible(payment, requester)
        return PaymentDTO.from_entity(payment)

    async def list_payments(
        self,
        requester: Requester,
        *,
        page: int = 1,
        size: int = 20,
        status: Optional[PaymentStatus] = None,
        all_users: bool = False,
    ) -> Tuple[list[PaymentDTO], int]:
        if all_users and not requester.is_privileged:
            raise ForbiddenException("Listing all payments requires elevated privileges")
        user_id = None if all_users else requester.id
        skip = (page - 1) * size
        async with self._uow_factory(readonly=True) as uow:
            items = await uow.payment_repository.list_payments(
                user_id=user_id, status=status, skip=skip, limit=size
            )
            total = await uow.payment_repository.count_payments(user_id=user_id, status=status)
        return [PaymentDTO.from_entity(p) for p in items], total

    # ------------------------------------------------------------------
    # reconciliation
    # ------------------------------------------------------------------
    async def reconcile_payment(self, payment_id: str, requester: Optional[Requester] = None) -> PaymentDTO:
        """Pull the gateway's view of a payment and apply it if it moves forward."""
        payment = await self._load(payment_id)
        if requester is not None:
            self._ensure_visible(payment, requester)

        async with self._gateways.use(payment.provider) as gateway:
            intent = await gateway.get_payment_status(payment.provider_payment_id)
        status = map_provider_status(intent.status)

        async def apply(uow: AbstractUnitOfWork) -> Tuple[Payment, bool]:
            locked = await self._lock(uow, payment_id)
            before = locked.status
            try:
                if status == PaymentStatus.SUCCEEDED:
                    locked.mark_captured(status, intent.amount)
                else:
                    locked.apply_provider_status(status)
            except InvalidPaymentTransitionException:
                logger.warning(
                    "payment_reconcile_conflict",
                    payment_id=locked.id,
                    local_status=before.value,
                    provider_status=intent.status,
                )
                return locked, False
            if locked.status == before:
                return locked, False
            return await uow.payment_repository.update(locked), True

        payment, changed = await self._run_locked(apply)
        if changed:
            logger.info(
                "payment_reconciled",
                payment_id=payment.id,
                status=payment.status.value,
                provider_status=intent.status,
            )
            await self._audit(
                AuditAction.PAYMENT_RECONCILED,
                payment,
                requester.id if requester else None,
                provider_status=intent.status,
            )
        return PaymentDTO.from_entity(payment)

    async def reconcile_stale(self, older_than_minutes: int = 30, limit: int = 100) -> dict:
        """Reconcile PENDING/PROCESSING payments older than the window."""
        cutoff = _utcnow() - timedelta(minutes=older_than_minutes)
        async with self._uow_factory(readonly=True) as uow:
            stale = await uow.payment_repository.list_stale(STALE_STATUSES, cutoff, limit)

        summary = {"checked": 0, "updated": 0, "failed": 0}
        for payment in stale:
            summary["checked"] += 1
            try:
                result = await self.reconcile_payment(payment.id)
            except BusinessException as exc:
                summary["failed"] += 1
                logger.warning(
                    "payment_reconcile_failed",
                    payment_id=payment.id,
                    error_type=exc.error_type,
                    error=exc.message,
                )
                continue
            if result.status != payment.status:
                summary["updated"] += 1
        logger.info("payment_reconcile_batch_done", **summary)
        return summary

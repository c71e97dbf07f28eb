"""
Celery tasks for payment reconciliation.

Each task runs its coroutine with asyncio.run; the gateway client and the
engine pool are bound to that loop, so both are released before it closes.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

from celery import shared_task

from application.services.payment_service import PaymentApplicationService
from core.logging_config import get_logger
from core.settings import payment_settings
from domain.common.exceptions import BusinessException
from infrastructure.database import AsyncSessionLocal, dispose_engine
from infrastructure.external.payments import payment_gateway_selector
from infrastructure.repositories.audit_repository import SQLAlchemyAuditLogger
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork
from .utils.base_task import BaseTask


logger = get_logger(__name__)

T = TypeVar("T")


def _build_service() -> PaymentApplicationService:
    return PaymentApplicationService(
        uow_factory=SQLAlchemyUnitOfWork,
        gateways=payment_gateway_selector,
        audit=SQLAlchemyAuditLogger(AsyncSessionLocal),
    )


def _run(work: Callable[[PaymentApplicationService], Awaitable[T]]) -> T:
    async def _main() -> T:
        try:
            return await work(_build_service())
        finally:
            await payment_gateway_selector.aclose()
            await dispose_engine()

    return asyncio.run(_main())


@shared_task(name="payments.reconcile_stale", bind=True, base=BaseTask)
def reconcile_stale_payments(self, older_than_minutes: int | None = None, limit: int | None = None) -> dict:
    """Poll the gateway for PENDING/PROCESSING payments past the window."""
    window = older_than_minutes or payment_settings.reconcile.stale_after_minutes
    batch = limit or payment_settings.reconcile.batch_size
    summary = _run(lambda service: service.reconcile_stale(older_than_minutes=window, limit=batch))
    logger.info("payment_reconcile_task_done", window_minutes=window, **summary)
    return summary


@shared_task(
    name="payments.reconcile_payment",
    bind=True,
    base=BaseTask,
    max_retries=3,
    default_retry_delay=30,
)
def reconcile_payment(self, payment_id: str) -> dict:
    try:
        payment = _run(lambda service: service.reconcile_payment(payment_id))
    except BusinessException as exc:
        logger.warning("payment_reconcile_retry", payment_id=payment_id, error=exc.message)
        raise self.retry(exc=exc)
    return {"payment_id": payment.id, "status": payment.status.value}

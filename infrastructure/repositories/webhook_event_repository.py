"""
Webhook 事件日志仓储实现
"""
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.payment.entity import Provider, WebhookEventLog
from domain.payment.exceptions import WebhookEventAlreadyRecordedException
from domain.payment.repository import WebhookEventRepository
from infrastructure.models.payment import WebhookEventModel


logger = get_logger(__name__)


class SQLAlchemyWebhookEventRepository(WebhookEventRepository):
    """Webhook 事件日志仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: WebhookEventModel) -> WebhookEventLog:
        return WebhookEventLog(
            id=model.id,
            provider=Provider(model.provider),
            event_type=model.event_type,
            event_id=model.event_id,
            raw_payload=model.raw_payload,
            signature=model.signature,
            signature_verified=model.signature_verified,
            processed=model.processed,
            error_message=model.error_message,
            payment_id=model.payment_id,
            received_at=model.received_at,
            processed_at=model.processed_at,
        )

    async def add(self, event: WebhookEventLog) -> WebhookEventLog:
        """写入事件日志；唯一约束冲突转换为领域异常"""
        db_event = WebhookEventModel(
            id=event.id,
            provider=event.provider.value,
            event_type=event.event_type,
            event_id=event.event_id,
            raw_payload=event.raw_payload,
            signature=event.signature,
            signature_verified=event.signature_verified,
            processed=event.processed,
            error_message=event.error_message,
            payment_id=event.payment_id,
        )
        self.session.add(db_event)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            if event.event_id is None:
                raise
            logger.info(
                "webhook_event_conflict",
                provider=event.provider.value,
                event_id=event.event_id,
            )
            raise WebhookEventAlreadyRecordedException(event.provider.value, event.event_id) from exc
        event.received_at = db_event.received_at
        return event

    async def get_by_event_id(self, provider: Provider, event_id: str) -> Optional[WebhookEventLog]:
        result = await self.session.execute(
            select(WebhookEventModel).where(
                WebhookEventModel.provider == Provider.parse(provider).value,
                WebhookEventModel.event_id == event_id,
            )
        )
        db_event = result.scalar_one_or_none()
        return self._to_entity(db_event) if db_event else None

    async def get_for_update(self, log_id: str) -> Optional[WebhookEventLog]:
        result = await self.session.execute(
            select(WebhookEventModel)
            .where(WebhookEventModel.id == log_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        db_event = result.scalar_one_or_none()
        return self._to_entity(db_event) if db_event else None

    async def update(self, event: WebhookEventLog) -> WebhookEventLog:
        result = await self.session.execute(
            select(WebhookEventModel).where(WebhookEventModel.id == event.id)
        )
        db_event = result.scalar_one_or_none()
        if not db_event:
            raise ValueError(f"Webhook event {event.id} not found")

        db_event.processed = event.processed
        db_event.processed_at = event.processed_at
        db_event.error_message = event.error_message
        db_event.payment_id = event.payment_id
        await self.session.flush()
        return event

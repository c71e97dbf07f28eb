"""
支付仓储实现 - 使用SQLAlchemy实现数据访问
"""
from datetime import datetime
from typing import Optional, List
from decimal import Decimal
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from sqlalchemy.orm.exc import StaleDataError

from domain.payment.entity import (
    Currency,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Provider,
    Refund,
    RefundStatus,
)
from domain.payment.exceptions import PaymentConcurrencyException, PaymentNotFoundException
from domain.payment.repository import PaymentRepository, RefundRepository
from infrastructure.models.payment import PaymentModel, RefundModel
from core.logging_config import get_logger


logger = get_logger(__name__)


def _refund_to_entity(model: RefundModel) -> Refund:
    return Refund(
        id=model.id,
        payment_id=model.payment_id,
        provider_refund_id=model.provider_refund_id,
        amount=Decimal(str(model.amount)),
        status=RefundStatus(model.status),
        reason=model.reason,
        processed_at=model.processed_at,
        created_at=model.created_at,
        updated_at=model.updated_at,
        metadata=model.extra_metadata or {},
    )


class SQLAlchemyPaymentRepository(PaymentRepository):
    """支付仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentModel, *, with_refunds: bool = True) -> Payment:
        """将数据库模型转换为领域实体"""
        return Payment(
            id=model.id,
            user_id=model.user_id,
            provider=Provider(model.provider),
            provider_payment_id=model.provider_payment_id,
            amount=Decimal(str(model.amount)),
            currency=Currency(model.currency),
            status=PaymentStatus(model.status),
            payment_method=PaymentMethod(model.payment_method) if model.payment_method else None,
            description=model.description,
            metadata=dict(model.extra_metadata or {}),
            refunded_amount=Decimal(str(model.refunded_amount)),
            captured_at=model.captured_at,
            refunded_at=model.refunded_at,
            error_code=model.error_code,
            error_message=model.error_message,
            created_at=model.created_at,
            updated_at=model.updated_at,
            version=model.version,
            refunds=[_refund_to_entity(r) for r in model.refunds] if with_refunds else [],
        )

    def _to_model(self, entity: Payment) -> PaymentModel:
        """将领域实体转换为数据库模型"""
        return PaymentModel(
            id=entity.id,
            user_id=entity.user_id,
            provider=entity.provider.value,
            provider_payment_id=entity.provider_payment_id,
            amount=entity.amount,
            currency=entity.currency.value,
            status=entity.status.value,
            payment_method=entity.payment_method.value if entity.payment_method else None,
            description=entity.description,
            refunded_amount=entity.refunded_amount,
            captured_at=entity.captured_at,
            refunded_at=entity.refunded_at,
            error_code=entity.error_code,
            error_message=entity.error_message,
            extra_metadata=entity.metadata,
        )

    async def create(self, payment: Payment) -> Payment:
        """创建支付记录"""
        db_payment = self._to_model(payment)
        self.session.add(db_payment)
        await self.session.flush()
        logger.info(
            "payment_row_inserted",
            payment_id=db_payment.id,
            provider=db_payment.provider,
            provider_payment_id=db_payment.provider_payment_id,
        )
        return self._to_entity(db_payment, with_refunds=False)

    async def get_by_id(self, payment_id: str) -> Optional[Payment]:
        """根据ID获取支付"""
        result = await self.session.execute(
            select(PaymentModel).where(PaymentModel.id == payment_id)
        )
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def get_for_update(self, payment_id: str) -> Optional[Payment]:
        """加行锁读取支付；populate_existing 保证拿到锁后的最新数据"""
        result = await self.session.execute(
            select(PaymentModel)
            .where(PaymentModel.id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def get_by_provider_ref(
        self,
        provider: Provider,
        provider_payment_id: str
    ) -> Optional[Payment]:
        """根据支付渠道引用ID获取支付"""
        result = await self.session.execute(
            select(PaymentModel).where(
                PaymentModel.provider == Provider.parse(provider).value,
                PaymentModel.provider_payment_id == provider_payment_id
            )
        )
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    def _filtered(self, query, user_id: Optional[int], status: Optional[PaymentStatus]):
        if user_id is not None:
            query = query.where(PaymentModel.user_id == user_id)
        if status:
            query = query.where(PaymentModel.status == status.value)
        return query

    async def list_payments(
        self,
        *,
        user_id: Optional[int] = None,
        status: Optional[PaymentStatus] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> List[Payment]:
        """分页获取支付列表（按创建时间倒序）"""
        query = self._filtered(select(PaymentModel), user_id, status)
        query = query.order_by(PaymentModel.created_at.desc(), PaymentModel.id).offset(skip).limit(limit)

        result = await self.session.execute(query)
        return [self._to_entity(p) for p in result.scalars().all()]

    async def count_payments(
        self,
        *,
        user_id: Optional[int] = None,
        status: Optional[PaymentStatus] = None,
    ) -> int:
        """统计支付数量"""
        query = self._filtered(select(func.count(PaymentModel.id)), user_id, status)
        result = await self.session.execute(query)
        return result.scalar_one()

    async def list_stale(
        self,
        statuses: List[PaymentStatus],
        older_than: datetime,
        limit: int = 100,
    ) -> List[Payment]:
        result = await self.session.execute(
            select(PaymentModel)
            .where(
                PaymentModel.status.in_([s.value for s in statuses]),
                PaymentModel.created_at < older_than,
            )
            .order_by(PaymentModel.created_at)
            .limit(limit)
        )
        return [self._to_entity(p, with_refunds=False) for p in result.scalars().all()]

    async def update(self, payment: Payment) -> Payment:
        """更新支付记录；版本号不一致时抛出 PaymentConcurrencyException"""
        result = await self.session.execute(
            select(PaymentModel).where(PaymentModel.id == payment.id)
        )
        db_payment = result.scalar_one_or_none()

        if not db_payment:
            raise PaymentNotFoundException(payment.id)
        if payment.version is not None and db_payment.version != payment.version:
            raise PaymentConcurrencyException(payment.id)

        db_payment.amount = payment.amount
        db_payment.status = payment.status.value
        db_payment.refunded_amount = payment.refunded_amount
        db_payment.captured_at = payment.captured_at
        db_payment.refunded_at = payment.refunded_at
        db_payment.error_code = payment.error_code
        db_payment.error_message = payment.error_message
        db_payment.extra_metadata = dict(payment.metadata)

        try:
            await self.session.flush()
        except StaleDataError as exc:
            logger.warning("payment_version_conflict", payment_id=payment.id)
            raise PaymentConcurrencyException(payment.id) from exc

        payment.version = db_payment.version
        payment.updated_at = db_payment.updated_at
        logger.info(
            "payment_updated",
            payment_id=db_payment.id,
            status=db_payment.status,
            refunded_amount=str(db_payment.refunded_amount),
        )
        return payment


class SQLAlchemyRefundRepository(RefundRepository):
    """退款仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _provider_of(self, payment_id: str) -> str:
        result = await self.session.execute(
            select(PaymentModel.provider).where(PaymentModel.id == payment_id)
        )
        provider = result.scalar_one_or_none()
        if provider is None:
            raise PaymentNotFoundException(payment_id)
        return provider

    async def create(self, refund: Refund) -> Refund:
        """创建退款记录"""
        db_refund = RefundModel(
            id=refund.id,
            payment_id=refund.payment_id,
            provider=await self._provider_of(refund.payment_id),
            provider_refund_id=refund.provider_refund_id,
            amount=refund.amount,
            status=refund.status.value,
            reason=refund.reason,
            processed_at=refund.processed_at,
            extra_metadata=refund.metadata,
        )
        self.session.add(db_refund)
        await self.session.flush()

        logger.info(
            "refund_created",
            refund_id=db_refund.id,
            payment_id=db_refund.payment_id,
            amount=str(db_refund.amount),
            status=db_refund.status,
        )
        refund.created_at = db_refund.created_at
        refund.updated_at = db_refund.updated_at
        return refund

    async def get_by_provider_refund_id(
        self,
        provider: Provider,
        provider_refund_id: str
    ) -> Optional[Refund]:
        """根据渠道退款ID获取退款"""
        result = await self.session.execute(
            select(RefundModel).where(
                RefundModel.provider == Provider.parse(provider).value,
                RefundModel.provider_refund_id == provider_refund_id
            )
        )
        db_refund = result.scalar_one_or_none()
        return _refund_to_entity(db_refund) if db_refund else None

    async def list_by_payment(self, payment_id: str) -> List[Refund]:
        """获取支付的退款列表"""
        result = await self.session.execute(
            select(RefundModel)
            .where(RefundModel.payment_id == payment_id)
            .order_by(RefundModel.created_at)
        )
        return [_refund_to_entity(r) for r in result.scalars().all()]

    async def update(self, refund: Refund) -> Refund:
        """更新退款记录"""
        result = await self.session.execute(
            select(RefundModel).where(RefundModel.id == refund.id)
        )
        db_refund = result.scalar_one_or_none()

        if not db_refund:
            raise ValueError(f"Refund with id {refund.id} not found")

        db_refund.status = refund.status.value
        db_refund.processed_at = refund.processed_at
        db_refund.extra_metadata = refund.metadata

        await self.session.flush()

        logger.info(
            "refund_updated",
            refund_id=db_refund.id,
            payment_id=db_refund.payment_id,
            status=db_refund.status
        )
        return refund

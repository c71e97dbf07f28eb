"""
支付仓储接口 - 定义支付数据访问的抽象接口
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, List

from .entity import Payment, Refund, PaymentStatus, Provider, WebhookEventLog


class PaymentRepository(ABC):
    """支付仓储抽象接口 - 只定义能做什么，不管怎么做"""

    @abstractmethod
    async def create(self, payment: Payment) -> Payment:
        """创建支付记录"""
        pass

    @abstractmethod
    async def get_by_id(self, payment_id: str) -> Optional[Payment]:
        """根据ID获取支付（含退款明细）"""
        pass

    @abstractmethod
    async def get_for_update(self, payment_id: str) -> Optional[Payment]:
        """加行锁读取支付（SELECT ... FOR UPDATE），用于读-改-写"""
        pass

    @abstractmethod
    async def get_by_provider_ref(self, provider: Provider, provider_payment_id: str) -> Optional[Payment]:
        """根据支付渠道引用ID获取支付"""
        pass

    @abstractmethod
    async def list_payments(
        self,
        *,
        user_id: Optional[int] = None,
        status: Optional[PaymentStatus] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> List[Payment]:
        """分页获取支付列表；user_id 为空时返回全部用户"""
        pass

    @abstractmethod
    async def count_payments(
        self,
        *,
        user_id: Optional[int] = None,
        status: Optional[PaymentStatus] = None,
    ) -> int:
        """统计支付数量"""
        pass

    @abstractmethod
    async def list_stale(
        self,
        statuses: List[PaymentStatus],
        older_than: datetime,
        limit: int = 100,
    ) -> List[Payment]:
        """获取长时间停留在未终态的支付（对账用）"""
        pass

    @abstractmethod
    async def update(self, payment: Payment) -> Payment:
        """更新支付记录（乐观锁版本校验）"""
        pass


class RefundRepository(ABC):
    """退款仓储抽象接口"""

    @abstractmethod
    async def create(self, refund: Refund) -> Refund:
        """创建退款记录"""
        pass

    @abstractmethod
    async def get_by_provider_refund_id(
        self,
        provider: Provider,
        provider_refund_id: str,
    ) -> Optional[Refund]:
        """根据渠道退款ID获取退款"""
        pass

    @abstractmethod
    async def list_by_payment(self, payment_id: str) -> List[Refund]:
        """获取支付的退款列表"""
        pass

    @abstractmethod
    async def update(self, refund: Refund) -> Refund:
        """更新退款记录"""
        pass


class WebhookEventRepository(ABC):
    """Webhook 事件日志仓储 - 只追加，不删除"""

    @abstractmethod
    async def add(self, event: WebhookEventLog) -> WebhookEventLog:
        """写入事件；(provider, event_id) 冲突时抛出 WebhookEventAlreadyRecordedException"""
        pass

    @abstractmethod
    async def get_by_event_id(self, provider: Provider, event_id: str) -> Optional[WebhookEventLog]:
        pass

    @abstractmethod
    async def get_for_update(self, log_id: str) -> Optional[WebhookEventLog]:
        pass

    @abstractmethod
    async def update(self, event: WebhookEventLog) -> WebhookEventLog:
        pass

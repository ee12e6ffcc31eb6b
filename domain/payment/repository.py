"""
支付仓储接口 - 定义支付意向与结算事件的数据访问抽象
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, List

from .entity import PaymentIntent, PaymentStatus, FinalizationEvent, FinalizationEventType


class DuplicateFinalizationEvent(Exception):
    """(payment_id, event_type) 已存在：对应副作用已被记录"""

    def __init__(self, payment_id: int, event_type: FinalizationEventType):
        self.payment_id = payment_id
        self.event_type = event_type
        super().__init__(f"finalization event already recorded: {payment_id}/{event_type.value}")


class PaymentIntentRepository(ABC):
    """支付意向仓储抽象接口"""

    @abstractmethod
    async def add(self, intent: PaymentIntent) -> PaymentIntent:
        """创建支付意向；reference 冲突时抛出 ReferenceCollisionError"""
        pass

    @abstractmethod
    async def get_by_id(self, payment_id: int, *, for_update: bool = False) -> Optional[PaymentIntent]:
        """根据ID获取（可选行锁）"""
        pass

    @abstractmethod
    async def get_by_reference(self, reference: str) -> Optional[PaymentIntent]:
        """根据支付引用获取"""
        pass

    @abstractmethod
    async def list_for_order(
        self,
        order_id: int,
        *,
        status: Optional[PaymentStatus] = None,
        channel: Optional[str] = None,
    ) -> List[PaymentIntent]:
        """获取订单下的支付意向（按创建时间倒序）"""
        pass

    @abstractmethod
    async def get_paid_for_order(self, order_id: int) -> Optional[PaymentIntent]:
        """获取订单的已支付意向"""
        pass

    @abstractmethod
    async def compare_and_set_paid(self, intent: PaymentIntent) -> bool:
        """仅当库中状态仍为 PENDING 时写入 PAID；返回是否由本次调用完成迁移"""
        pass

    @abstractmethod
    async def update(self, intent: PaymentIntent) -> PaymentIntent:
        """更新支付意向"""
        pass

    @abstractmethod
    async def cancel_pending_for_order(self, order_id: int, *, exclude_id: Optional[int] = None) -> int:
        """取消订单下其余 PENDING 意向，返回受影响行数"""
        pass

    @abstractmethod
    async def cancel_pending_created_before(self, cutoff: datetime) -> int:
        """取消早于 cutoff 创建的 PENDING 意向（TTL 过期）"""
        pass

    @abstractmethod
    async def receipt_no_exists(self, receipt_no: str) -> bool:
        pass


class FinalizationEventRepository(ABC):
    """结算事件仓储抽象接口"""

    @abstractmethod
    async def exists(self, payment_id: int, event_type: FinalizationEventType) -> bool:
        pass

    @abstractmethod
    async def add(self, event: FinalizationEvent) -> FinalizationEvent:
        """写入事件；重复时抛出 DuplicateFinalizationEvent"""
        pass

    @abstractmethod
    async def list_for_payment(self, payment_id: int) -> List[FinalizationEvent]:
        pass

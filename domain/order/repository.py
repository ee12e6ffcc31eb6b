"""
订单相关仓储接口
"""
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from .entity import Order, Supplier, OrderActivity, CommsReason


class OrderRepository(ABC):

    @abstractmethod
    async def get_by_id(self, order_id: int, *, for_update: bool = False) -> Optional[Order]:
        """获取订单（含订单行）"""
        pass

    @abstractmethod
    async def update_status(self, order: Order) -> None:
        pass


class SupplierRepository(ABC):

    @abstractmethod
    async def get_by_id(self, supplier_id: int) -> Optional[Supplier]:
        pass

    @abstractmethod
    async def get_many(self, supplier_ids: Iterable[int]) -> Dict[int, Supplier]:
        pass

    @abstractmethod
    async def set_recipient_code(self, supplier_id: int, recipient_code: str) -> None:
        """持久化懒创建的转账收款人编码"""
        pass


class SupplierOfferRepository(ABC):

    @abstractmethod
    async def cheapest_price(self, product_id: int, variant_id: Optional[int]) -> Optional[Decimal]:
        """在售且有库存的最低报价；variant_id 为 None 时忽略规格"""
        pass


class OrderActivityRepository(ABC):

    @abstractmethod
    async def add(self, activity: OrderActivity) -> OrderActivity:
        pass

    @abstractmethod
    async def list_by_kind(self, order_id: int, kind: str) -> List[OrderActivity]:
        """按时间倒序返回"""
        pass


class OrderCommsRepository(ABC):

    @abstractmethod
    async def upsert_fee_slice(self, order_id: int, payment_id: int, amount: Decimal) -> None:
        """每笔支付一条 SERVICE_FEE_SLICE，重复调用覆盖金额"""
        pass

    @abstractmethod
    async def ensure_supplier_charge(
        self, order_id: int, supplier_id: int, reason: CommsReason, amount: Decimal
    ) -> bool:
        """每个 (订单, 供应商, 原因) 至多一条；返回是否新建"""
        pass

    @abstractmethod
    async def sum_by_reason(self, order_id: int, reason: CommsReason) -> Decimal:
        pass


class OperatorSettingRepository(ABC):
    """运营可调参数（键值表）"""

    @abstractmethod
    async def get_values(self, keys: Iterable[str]) -> Dict[str, str]:
        pass

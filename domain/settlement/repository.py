"""
结算仓储接口
"""
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

from .entity import PurchaseOrder, SupplierPaymentAllocation, SupplierLedgerEntry, LedgerEntryType
from .profit import ProfitBreakdown


class PurchaseOrderRepository(ABC):

    @abstractmethod
    async def get_by_id(self, purchase_order_id: int) -> Optional[PurchaseOrder]:
        pass

    @abstractmethod
    async def get_for_supplier(self, order_id: int, supplier_id: int) -> Optional[PurchaseOrder]:
        pass

    @abstractmethod
    async def list_for_order(self, order_id: int) -> List[PurchaseOrder]:
        pass

    @abstractmethod
    async def add(self, purchase_order: PurchaseOrder) -> PurchaseOrder:
        """新建采购单；唯一约束冲突时抛出 ReferenceCollisionError"""
        pass

    @abstractmethod
    async def update(self, purchase_order: PurchaseOrder) -> PurchaseOrder:
        """更新金额/状态，不修改 supplier_order_ref"""
        pass

    @abstractmethod
    async def replace_items(self, purchase_order_id: int, order_item_ids: Iterable[int]) -> None:
        """先清空再关联订单行"""
        pass


class AllocationRepository(ABC):

    @abstractmethod
    async def get_by_id(self, allocation_id: int) -> Optional[SupplierPaymentAllocation]:
        pass

    @abstractmethod
    async def get_for_purchase_order(
        self, payment_id: int, purchase_order_id: int
    ) -> Optional[SupplierPaymentAllocation]:
        pass

    @abstractmethod
    async def list_for_payment(self, payment_id: int) -> List[SupplierPaymentAllocation]:
        pass

    @abstractmethod
    async def add(self, allocation: SupplierPaymentAllocation) -> SupplierPaymentAllocation:
        pass

    @abstractmethod
    async def update(self, allocation: SupplierPaymentAllocation) -> SupplierPaymentAllocation:
        pass


class SupplierLedgerRepository(ABC):

    @abstractmethod
    async def exists(
        self, supplier_id: int, reference_type: str, reference_id: str, entry_type: LedgerEntryType
    ) -> bool:
        pass

    @abstractmethod
    async def add(self, entry: SupplierLedgerEntry) -> SupplierLedgerEntry:
        pass


class ProfitRepository(ABC):

    @abstractmethod
    async def upsert(self, breakdown: ProfitBreakdown) -> ProfitBreakdown:
        """按 payment_id 覆盖写入（后写者胜）"""
        pass

    @abstractmethod
    async def get_by_payment(self, payment_id: int) -> Optional[ProfitBreakdown]:
        pass

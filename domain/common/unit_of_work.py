"""Unit of Work 抽象定义"""
from __future__ import annotations

from abc import ABC, abstractmethod

from domain.payment.repository import PaymentIntentRepository, FinalizationEventRepository
from domain.order.repository import (
    OrderRepository,
    SupplierRepository,
    SupplierOfferRepository,
    OrderActivityRepository,
    OrderCommsRepository,
    OperatorSettingRepository,
)
from domain.settlement.repository import (
    PurchaseOrderRepository,
    AllocationRepository,
    SupplierLedgerRepository,
    ProfitRepository,
)


class AbstractUnitOfWork(ABC):
    """应用层事务边界控制抽象（仅暴露结算核心需要的仓储）"""

    payment_intents: PaymentIntentRepository
    finalization_events: FinalizationEventRepository
    orders: OrderRepository
    suppliers: SupplierRepository
    supplier_offers: SupplierOfferRepository
    order_activities: OrderActivityRepository
    order_comms: OrderCommsRepository
    operator_settings: OperatorSettingRepository
    purchase_orders: PurchaseOrderRepository
    allocations: AllocationRepository
    supplier_ledger: SupplierLedgerRepository
    profits: ProfitRepository

    def __init__(self, *, readonly: bool = False) -> None:
        self._committed = False
        self._readonly = readonly

    async def __aenter__(self) -> "AbstractUnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc:
            await self.rollback()
        else:
            # 只在非只读且未显式提交时自动提交
            if not self._readonly and not self._committed:
                await self.commit()

    @abstractmethod
    async def commit(self) -> None:
        """提交事务"""
        ...

    @abstractmethod
    async def rollback(self) -> None:
        """回滚事务"""

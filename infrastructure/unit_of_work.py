"""SQLAlchemy Unit of Work 实现"""
from __future__ import annotations

from typing import Optional, Callable
import inspect

from sqlalchemy.ext.asyncio import AsyncSession

from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.database import AsyncSessionLocal
from infrastructure.repositories.payment_repository import (
    SQLAlchemyPaymentIntentRepository,
    SQLAlchemyFinalizationEventRepository,
)
from infrastructure.repositories.order_repository import (
    SQLAlchemyOrderRepository,
    SQLAlchemySupplierRepository,
    SQLAlchemySupplierOfferRepository,
    SQLAlchemyOrderActivityRepository,
    SQLAlchemyOrderCommsRepository,
    SQLAlchemyOperatorSettingRepository,
)
from infrastructure.repositories.settlement_repository import (
    SQLAlchemyPurchaseOrderRepository,
    SQLAlchemyAllocationRepository,
    SQLAlchemySupplierLedgerRepository,
    SQLAlchemyProfitRepository,
)


_REPOSITORIES = {
    "payment_intents": SQLAlchemyPaymentIntentRepository,
    "finalization_events": SQLAlchemyFinalizationEventRepository,
    "orders": SQLAlchemyOrderRepository,
    "suppliers": SQLAlchemySupplierRepository,
    "supplier_offers": SQLAlchemySupplierOfferRepository,
    "order_activities": SQLAlchemyOrderActivityRepository,
    "order_comms": SQLAlchemyOrderCommsRepository,
    "operator_settings": SQLAlchemyOperatorSettingRepository,
    "purchase_orders": SQLAlchemyPurchaseOrderRepository,
    "allocations": SQLAlchemyAllocationRepository,
    "supplier_ledger": SQLAlchemySupplierLedgerRepository,
    "profits": SQLAlchemyProfitRepository,
}


class SQLAlchemyUnitOfWork(AbstractUnitOfWork):
    """基于SQLAlchemy的Unit of Work"""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        session: Optional[AsyncSession] = None,
        *,
        readonly: bool = False,
    ) -> None:
        super().__init__(readonly=readonly)
        self._session_factory = session_factory
        self._external_session = session
        self.session: Optional[AsyncSession] = session
        self._transaction = None
        self._detach_repositories()

    def _detach_repositories(self) -> None:
        for name in _REPOSITORIES:
            setattr(self, name, None)

    async def __aenter__(self) -> "SQLAlchemyUnitOfWork":
        if self.session is None:
            self.session = self._session_factory()
        for name, repository_cls in _REPOSITORIES.items():
            setattr(self, name, repository_cls(self.session))
        # 仅在非只读模式下显式开启事务
        if not self._readonly:
            self._transaction = await self.session.begin()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await super().__aexit__(exc_type, exc, tb)
        finally:
            # 事务在 commit/rollback 后通常会结束，这里仅在仍然活动时做安全关闭
            tx = self._transaction
            if tx is not None and getattr(tx, "is_active", False):
                close = getattr(tx, "close", None)
                if callable(close):
                    res = close()
                    if inspect.isawaitable(res):
                        await res
            self._transaction = None
            if self._external_session is None and self.session is not None:
                await self.session.close()
                self.session = None
            self._detach_repositories()

    async def commit(self) -> None:
        if self._readonly:
            # 只读情况下不提交
            self._committed = True
            return
        if self.session and self.session.in_transaction():
            await self.session.commit()
        self._committed = True

    async def rollback(self) -> None:
        if self.session and self.session.in_transaction():
            await self.session.rollback()
        self._committed = False


def uow_factory(session_factory: Callable[[], AsyncSession] = AsyncSessionLocal):
    """返回创建 UoW 的可调用对象：uow_factory()(readonly=True)"""

    def _make(*, readonly: bool = False) -> SQLAlchemyUnitOfWork:
        return SQLAlchemyUnitOfWork(session_factory, readonly=readonly)

    return _make

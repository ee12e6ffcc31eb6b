"""
Supplier and customer notifications handed to the deferred-work boundary.

Message rendering and delivery live in the tasks; this service decides who is
notified and charges the per-supplier comms cost exactly once.
"""
from __future__ import annotations

from typing import Callable, Optional

from application.ports.settings_provider import SettlementSettingsProvider
from application.ports.task_dispatcher import TaskDispatcher
from core.logging_config import get_logger
from domain.common.exceptions import OrderNotFoundException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.entity import CommsReason


logger = get_logger(__name__)

SUPPLIER_ORDER_TASK = "notifications.supplier_order"
CUSTOMER_ORDER_PAID_TASK = "notifications.customer_order_paid"


class NotificationService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        *,
        dispatcher: TaskDispatcher,
        settings_provider: SettlementSettingsProvider,
    ) -> None:
        self._uow_factory = uow_factory
        self._dispatcher = dispatcher
        self._settings_provider = settings_provider

    async def notify_suppliers(self, order_id: int, *, uow: Optional[AbstractUnitOfWork] = None) -> dict:
        if uow is None:
            async with self._uow_factory() as own:
                return await self._notify_suppliers(order_id, own)
        return await self._notify_suppliers(order_id, uow)

    async def _notify_suppliers(self, order_id: int, uow: AbstractUnitOfWork) -> dict:
        purchase_orders = await uow.purchase_orders.list_for_order(order_id)
        suppliers = await uow.suppliers.get_many(po.supplier_id for po in purchase_orders)
        snapshot = await self._settings_provider.get()
        notified, skipped = [], []
        pending = []

        for po in purchase_orders:
            supplier = suppliers.get(po.supplier_id)
            if supplier is None or not supplier.is_active:
                skipped.append(po.supplier_id)
                continue
            charged = await uow.order_comms.ensure_supplier_charge(
                order_id, supplier.id, CommsReason.SUPPLIER_NOTIFY, snapshot.comms_unit_cost
            )
            if not charged:
                # 已通知过该供应商
                skipped.append(supplier.id)
                continue
            pending.append({
                "order_id": order_id,
                "supplier_id": supplier.id,
                "purchase_order_id": po.id,
                "supplier_order_ref": po.supplier_order_ref,
                "email": supplier.email,
                "phone": supplier.phone,
            })

        # 先登记全部计费行再投递：投递失败时事务整体回滚，重试不会漏掉后面的供应商
        for kwargs in pending:
            self._dispatcher.dispatch(SUPPLIER_ORDER_TASK, kwargs=kwargs)
            notified.append(kwargs["supplier_id"])

        logger.info("suppliers_notified", order_id=order_id, notified=notified, skipped=skipped)
        return {"notified": notified, "skipped": skipped}

    async def notify_customer_paid(
        self, order_id: int, payment_id: int, *, uow: Optional[AbstractUnitOfWork] = None
    ) -> dict:
        if uow is None:
            async with self._uow_factory(readonly=True) as own:
                order = await own.orders.get_by_id(order_id)
        else:
            order = await uow.orders.get_by_id(order_id)
        if order is None:
            raise OrderNotFoundException(order_id)
        if not order.customer_email:
            logger.info("customer_email_skipped", order_id=order_id, reason="no_customer_email")
            return {"skipped": "no customer email"}

        self._dispatcher.dispatch(
            CUSTOMER_ORDER_PAID_TASK,
            kwargs={"order_id": order_id, "payment_id": payment_id, "email": order.customer_email},
        )
        return {"email": order.customer_email}

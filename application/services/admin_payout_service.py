"""
Operator overrides on supplier allocations.
"""
from __future__ import annotations

from typing import Callable, Optional

from application.dtos.settlement import AllocationDTO
from application.ports.settlement_lock import SettlementLock
from core.logging_config import get_logger
from core.settings import PaymentSettings, payment_settings
from domain.common.exceptions import AllocationNotFoundException, InvalidStateTransitionException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.entity import ActivityKind, OrderActivity
from domain.settlement.entity import AllocationStatus, LedgerEntryType, SupplierLedgerEntry


logger = get_logger(__name__)

LEDGER_REFERENCE_TYPE = "ALLOCATION"


class AdminPayoutService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        *,
        lock: SettlementLock,
        settings: Optional[PaymentSettings] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._lock = lock
        self._settings = settings or payment_settings

    async def mark_allocation_paid(
        self,
        allocation_id: int,
        *,
        create_ledger: bool = False,
        note: Optional[str] = None,
        admin_id: Optional[str] = None,
    ) -> AllocationDTO:
        """
        强制标记供应商分配为已付（幂等）

        规则：
        1. 已 PAID 不重复写入，REVERSED 不允许
        2. create_ledger 时记一笔 CREDIT 台账，(供应商, ALLOCATION, 分配ID, CREDIT) 至多一条
        """
        async with self._uow_factory(readonly=True) as uow:
            allocation = await uow.allocations.get_by_id(allocation_id)
        if allocation is None:
            raise AllocationNotFoundException(allocation_id)

        ledger_entry_id = None
        async with self._lock.hold(allocation.order_id):
            async with self._uow_factory() as uow:
                allocation = await uow.allocations.get_by_id(allocation_id)
                if allocation.status == AllocationStatus.REVERSED:
                    raise InvalidStateTransitionException(
                        "SupplierPaymentAllocation", allocation.status.value, AllocationStatus.PAID.value
                    )

                if allocation.mark_paid(note=note):
                    allocation.meta["marked_paid_by"] = admin_id
                    allocation = await uow.allocations.update(allocation)
                    po = await uow.purchase_orders.get_by_id(allocation.purchase_order_id)
                    if po is not None:
                        po.release_payout()
                        await uow.purchase_orders.update(po)
                    await uow.order_activities.add(OrderActivity(
                        id=None,
                        order_id=allocation.order_id,
                        kind=ActivityKind.ALLOCATION_MARKED_PAID.value,
                        message=f"Allocation {allocation.id} marked paid",
                        meta={
                            "allocation_id": allocation.id,
                            "supplier_id": allocation.supplier_id,
                            "amount": str(allocation.amount),
                            "admin_id": admin_id,
                            "note": note,
                        },
                    ))
                    logger.info(
                        "allocation_marked_paid",
                        allocation_id=allocation.id,
                        supplier_id=allocation.supplier_id,
                        admin_id=admin_id,
                    )

                if create_ledger and not await uow.supplier_ledger.exists(
                    allocation.supplier_id, LEDGER_REFERENCE_TYPE, str(allocation.id), LedgerEntryType.CREDIT
                ):
                    entry = await uow.supplier_ledger.add(SupplierLedgerEntry(
                        id=None,
                        supplier_id=allocation.supplier_id,
                        entry_type=LedgerEntryType.CREDIT,
                        amount=allocation.amount,
                        reference_type=LEDGER_REFERENCE_TYPE,
                        reference_id=str(allocation.id),
                        currency=self._settings.settlement.currency,
                        note=note,
                        created_by=admin_id,
                    ))
                    ledger_entry_id = entry.id

        return AllocationDTO(
            id=allocation.id,
            payment_id=allocation.payment_id,
            order_id=allocation.order_id,
            supplier_id=allocation.supplier_id,
            purchase_order_id=allocation.purchase_order_id,
            amount=allocation.amount,
            status=allocation.status.value,
            transfer_reference=allocation.transfer_reference,
            released_at=allocation.released_at,
            note=allocation.note,
            ledger_entry_id=ledger_entry_id,
        )

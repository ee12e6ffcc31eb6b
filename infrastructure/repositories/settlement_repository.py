"""
结算仓储实现 - 采购单、供应商分配、供应商台账、利润明细
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy import select, delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.common.exceptions import AllocationNotFoundException, ReferenceCollisionError
from domain.settlement.entity import (
    AllocationStatus,
    LedgerEntryType,
    PayoutStatus,
    PurchaseOrder,
    PurchaseOrderStatus,
    SupplierLedgerEntry,
    SupplierPaymentAllocation,
)
from domain.settlement.profit import CostLine, CostSource, ProfitBreakdown, ProfitMode
from domain.settlement.repository import (
    AllocationRepository,
    ProfitRepository,
    PurchaseOrderRepository,
    SupplierLedgerRepository,
)
from infrastructure.models.settlement import (
    ProfitBreakdownModel,
    PurchaseOrderItemModel,
    PurchaseOrderModel,
    SupplierLedgerEntryModel,
    SupplierPaymentAllocationModel,
)


logger = get_logger(__name__)


def _money(value) -> Decimal:
    return Decimal(str(value if value is not None else 0))


class SQLAlchemyPurchaseOrderRepository(PurchaseOrderRepository):
    """采购单仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _item_ids(self, purchase_order_id: int) -> List[int]:
        result = await self.session.execute(
            select(PurchaseOrderItemModel.order_item_id)
            .where(PurchaseOrderItemModel.purchase_order_id == purchase_order_id)
            .order_by(PurchaseOrderItemModel.order_item_id)
        )
        return list(result.scalars().all())

    async def _to_entity(self, model: PurchaseOrderModel) -> PurchaseOrder:
        return PurchaseOrder(
            id=model.id,
            order_id=model.order_id,
            supplier_id=model.supplier_id,
            supplier_order_ref=model.supplier_order_ref,
            status=PurchaseOrderStatus(model.status),
            subtotal=_money(model.subtotal),
            supplier_amount=_money(model.supplier_amount),
            platform_fee=_money(model.platform_fee),
            payout_status=PayoutStatus(model.payout_status),
            order_item_ids=await self._item_ids(model.id),
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    async def get_by_id(self, purchase_order_id: int) -> Optional[PurchaseOrder]:
        result = await self.session.execute(
            select(PurchaseOrderModel).where(PurchaseOrderModel.id == purchase_order_id)
        )
        db_po = result.scalar_one_or_none()
        return await self._to_entity(db_po) if db_po else None

    async def get_for_supplier(self, order_id: int, supplier_id: int) -> Optional[PurchaseOrder]:
        result = await self.session.execute(
            select(PurchaseOrderModel).where(
                PurchaseOrderModel.order_id == order_id,
                PurchaseOrderModel.supplier_id == supplier_id,
            )
        )
        db_po = result.scalar_one_or_none()
        return await self._to_entity(db_po) if db_po else None

    async def list_for_order(self, order_id: int) -> List[PurchaseOrder]:
        result = await self.session.execute(
            select(PurchaseOrderModel)
            .where(PurchaseOrderModel.order_id == order_id)
            .order_by(PurchaseOrderModel.supplier_id)
        )
        return [await self._to_entity(m) for m in result.scalars().all()]

    async def add(self, purchase_order: PurchaseOrder) -> PurchaseOrder:
        now = datetime.now(timezone.utc)
        db_po = PurchaseOrderModel(
            order_id=purchase_order.order_id,
            supplier_id=purchase_order.supplier_id,
            supplier_order_ref=purchase_order.supplier_order_ref,
            status=purchase_order.status.value,
            subtotal=purchase_order.subtotal,
            supplier_amount=purchase_order.supplier_amount,
            platform_fee=purchase_order.platform_fee,
            payout_status=purchase_order.payout_status.value,
            created_at=purchase_order.created_at or now,
            updated_at=purchase_order.updated_at or now,
        )
        try:
            async with self.session.begin_nested():
                self.session.add(db_po)
                await self.session.flush()
        except IntegrityError as e:
            logger.warning(
                "purchase_order_conflict",
                order_id=purchase_order.order_id,
                supplier_id=purchase_order.supplier_id,
                supplier_order_ref=purchase_order.supplier_order_ref,
                error=str(e.orig),
            )
            raise ReferenceCollisionError(purchase_order.supplier_order_ref, constraint="purchase_orders")
        logger.info(
            "purchase_order_created",
            purchase_order_id=db_po.id,
            order_id=db_po.order_id,
            supplier_id=db_po.supplier_id,
            supplier_order_ref=db_po.supplier_order_ref,
        )
        return await self._to_entity(db_po)

    async def update(self, purchase_order: PurchaseOrder) -> PurchaseOrder:
        result = await self.session.execute(
            select(PurchaseOrderModel).where(PurchaseOrderModel.id == purchase_order.id)
        )
        db_po = result.scalar_one()
        db_po.status = purchase_order.status.value
        db_po.subtotal = purchase_order.subtotal
        db_po.supplier_amount = purchase_order.supplier_amount
        db_po.platform_fee = purchase_order.platform_fee
        db_po.payout_status = purchase_order.payout_status.value
        db_po.updated_at = purchase_order.updated_at or datetime.now(timezone.utc)
        await self.session.flush()
        return await self._to_entity(db_po)

    async def replace_items(self, purchase_order_id: int, order_item_ids: Iterable[int]) -> None:
        await self.session.execute(
            delete(PurchaseOrderItemModel).where(PurchaseOrderItemModel.purchase_order_id == purchase_order_id)
        )
        for item_id in sorted({i for i in order_item_ids if i is not None}):
            self.session.add(PurchaseOrderItemModel(purchase_order_id=purchase_order_id, order_item_id=item_id))
        await self.session.flush()


class SQLAlchemyAllocationRepository(AllocationRepository):
    """供应商分配仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: SupplierPaymentAllocationModel) -> SupplierPaymentAllocation:
        return SupplierPaymentAllocation(
            id=model.id,
            payment_id=model.payment_id,
            order_id=model.order_id,
            supplier_id=model.supplier_id,
            purchase_order_id=model.purchase_order_id,
            amount=_money(model.amount),
            status=AllocationStatus(model.status),
            transfer_reference=model.transfer_reference,
            released_at=model.released_at,
            note=model.note,
            meta=dict(model.meta or {}),
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    async def get_by_id(self, allocation_id: int) -> Optional[SupplierPaymentAllocation]:
        result = await self.session.execute(
            select(SupplierPaymentAllocationModel).where(SupplierPaymentAllocationModel.id == allocation_id)
        )
        db_alloc = result.scalar_one_or_none()
        return self._to_entity(db_alloc) if db_alloc else None

    async def get_for_purchase_order(
        self, payment_id: int, purchase_order_id: int
    ) -> Optional[SupplierPaymentAllocation]:
        result = await self.session.execute(
            select(SupplierPaymentAllocationModel).where(
                SupplierPaymentAllocationModel.payment_id == payment_id,
                SupplierPaymentAllocationModel.purchase_order_id == purchase_order_id,
            )
        )
        db_alloc = result.scalar_one_or_none()
        return self._to_entity(db_alloc) if db_alloc else None

    async def list_for_payment(self, payment_id: int) -> List[SupplierPaymentAllocation]:
        result = await self.session.execute(
            select(SupplierPaymentAllocationModel)
            .where(SupplierPaymentAllocationModel.payment_id == payment_id)
            .order_by(SupplierPaymentAllocationModel.supplier_id)
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def add(self, allocation: SupplierPaymentAllocation) -> SupplierPaymentAllocation:
        now = datetime.now(timezone.utc)
        db_alloc = SupplierPaymentAllocationModel(
            payment_id=allocation.payment_id,
            order_id=allocation.order_id,
            supplier_id=allocation.supplier_id,
            purchase_order_id=allocation.purchase_order_id,
            amount=allocation.amount,
            status=allocation.status.value,
            transfer_reference=allocation.transfer_reference,
            released_at=allocation.released_at,
            note=allocation.note,
            meta=allocation.meta,
            created_at=allocation.created_at or now,
            updated_at=allocation.updated_at or now,
        )
        self.session.add(db_alloc)
        await self.session.flush()
        logger.info(
            "allocation_created",
            allocation_id=db_alloc.id,
            payment_id=db_alloc.payment_id,
            supplier_id=db_alloc.supplier_id,
            amount=str(allocation.amount),
        )
        return self._to_entity(db_alloc)

    async def update(self, allocation: SupplierPaymentAllocation) -> SupplierPaymentAllocation:
        result = await self.session.execute(
            select(SupplierPaymentAllocationModel).where(SupplierPaymentAllocationModel.id == allocation.id)
        )
        db_alloc = result.scalar_one_or_none()
        if db_alloc is None:
            raise AllocationNotFoundException(allocation.id)
        db_alloc.amount = allocation.amount
        db_alloc.status = allocation.status.value
        db_alloc.transfer_reference = allocation.transfer_reference
        db_alloc.released_at = allocation.released_at
        db_alloc.note = allocation.note
        # JSON 列需要整体替换才能被识别为变更
        db_alloc.meta = dict(allocation.meta or {})
        db_alloc.updated_at = allocation.updated_at or datetime.now(timezone.utc)
        await self.session.flush()
        return self._to_entity(db_alloc)


class SQLAlchemySupplierLedgerRepository(SupplierLedgerRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    async def exists(
        self, supplier_id: int, reference_type: str, reference_id: str, entry_type: LedgerEntryType
    ) -> bool:
        result = await self.session.execute(
            select(func.count(SupplierLedgerEntryModel.id)).where(
                SupplierLedgerEntryModel.supplier_id == supplier_id,
                SupplierLedgerEntryModel.reference_type == reference_type,
                SupplierLedgerEntryModel.reference_id == reference_id,
                SupplierLedgerEntryModel.entry_type == entry_type.value,
            )
        )
        return (result.scalar() or 0) > 0

    async def add(self, entry: SupplierLedgerEntry) -> SupplierLedgerEntry:
        db_entry = SupplierLedgerEntryModel(
            supplier_id=entry.supplier_id,
            entry_type=entry.entry_type.value,
            amount=entry.amount,
            currency=entry.currency,
            reference_type=entry.reference_type,
            reference_id=entry.reference_id,
            note=entry.note,
            created_by=entry.created_by,
            created_at=entry.created_at or datetime.now(timezone.utc),
        )
        self.session.add(db_entry)
        await self.session.flush()
        logger.info(
            "supplier_ledger_entry_added",
            ledger_entry_id=db_entry.id,
            supplier_id=entry.supplier_id,
            entry_type=entry.entry_type.value,
            amount=str(entry.amount),
            reference_type=entry.reference_type,
            reference_id=entry.reference_id,
        )
        return SupplierLedgerEntry(
            id=db_entry.id,
            supplier_id=db_entry.supplier_id,
            entry_type=LedgerEntryType(db_entry.entry_type),
            amount=_money(db_entry.amount),
            reference_type=db_entry.reference_type,
            reference_id=db_entry.reference_id,
            currency=db_entry.currency,
            note=db_entry.note,
            created_by=db_entry.created_by,
            created_at=db_entry.created_at,
        )


class SQLAlchemyProfitRepository(ProfitRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def _lines_from_json(rows) -> List[CostLine]:
        lines = []
        for row in rows or []:
            lines.append(CostLine(
                order_item_id=row.get("order_item_id"),
                quantity=int(row.get("quantity") or 0),
                unit_cost=_money(row.get("unit_cost")),
                source=CostSource(row.get("source") or CostSource.NONE.value),
            ))
        return lines

    def _to_entity(self, model: ProfitBreakdownModel) -> ProfitBreakdown:
        return ProfitBreakdown(
            id=model.id,
            payment_id=model.payment_id,
            order_id=model.order_id,
            amount_paid=_money(model.amount_paid),
            cogs=_money(model.cogs),
            estimated_cogs=_money(model.estimated_cogs),
            gateway_fee=_money(model.gateway_fee),
            comms_cost=_money(model.comms_cost),
            base_fee=_money(model.base_fee),
            profit=_money(model.profit),
            mode=ProfitMode(model.mode),
            lines=self._lines_from_json(model.lines),
            computed_at=model.computed_at,
        )

    async def upsert(self, breakdown: ProfitBreakdown) -> ProfitBreakdown:
        result = await self.session.execute(
            select(ProfitBreakdownModel).where(ProfitBreakdownModel.payment_id == breakdown.payment_id)
        )
        db_row = result.scalar_one_or_none()
        if db_row is None:
            db_row = ProfitBreakdownModel(payment_id=breakdown.payment_id)
            self.session.add(db_row)
        db_row.order_id = breakdown.order_id
        db_row.amount_paid = breakdown.amount_paid
        db_row.cogs = breakdown.cogs
        db_row.estimated_cogs = breakdown.estimated_cogs
        db_row.gateway_fee = breakdown.gateway_fee
        db_row.comms_cost = breakdown.comms_cost
        db_row.base_fee = breakdown.base_fee
        db_row.profit = breakdown.profit
        db_row.mode = breakdown.mode.value
        db_row.lines = breakdown.lines_as_dicts()
        db_row.computed_at = breakdown.computed_at or datetime.now(timezone.utc)
        await self.session.flush()
        return self._to_entity(db_row)

    async def get_by_payment(self, payment_id: int) -> Optional[ProfitBreakdown]:
        result = await self.session.execute(
            select(ProfitBreakdownModel).where(ProfitBreakdownModel.payment_id == payment_id)
        )
        db_row = result.scalar_one_or_none()
        return self._to_entity(db_row) if db_row else None

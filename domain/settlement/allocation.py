"""
供应商资金分配领域服务
"""
from __future__ import annotations

from typing import Dict, List

from domain.payment.entity import PaymentIntent
from .entity import AllocationStatus, PurchaseOrder, SupplierPaymentAllocation
from .repository import AllocationRepository, PurchaseOrderRepository


class SupplierAllocationService:
    """
    为一笔已支付的支付意向，给订单下每张采购单登记一条供应商分配

    业务规则：
    1. (payment_id, purchase_order_id) 唯一；已存在的分配原样保留（不会回退状态）
    2. 新分配以 HELD 状态创建，金额等于采购单 supplier_amount
    3. 采购单标记为 FUNDED（已越过 FUNDED 的不动）
    """

    def __init__(self, allocations: AllocationRepository, purchase_orders: PurchaseOrderRepository):
        self.allocations = allocations
        self.purchase_orders = purchase_orders

    async def allocate(self, payment: PaymentIntent, purchase_orders: List[PurchaseOrder]) -> Dict[str, dict]:
        breakdown: Dict[str, dict] = {}
        for po in purchase_orders:
            allocation = await self.allocations.get_for_purchase_order(payment.id, po.id)
            if allocation is None:
                allocation = await self.allocations.add(
                    SupplierPaymentAllocation(
                        id=None,
                        payment_id=payment.id,
                        order_id=po.order_id,
                        supplier_id=po.supplier_id,
                        purchase_order_id=po.id,
                        amount=po.supplier_amount,
                        status=AllocationStatus.HELD,
                    )
                )
            if po.mark_funded():
                await self.purchase_orders.update(po)
            breakdown[str(po.supplier_id)] = {
                "purchase_order_id": po.id,
                "supplier_order_ref": po.supplier_order_ref,
                "allocation_id": allocation.id,
                "amount": str(allocation.amount),
                "status": allocation.status.value,
            }
        return breakdown

"""
采购单拆分领域服务 - 按供应商为订单生成采购单（可重复执行）
"""
from __future__ import annotations

from typing import Callable, List, Optional

from domain.common.exceptions import ReferenceCollisionError
from domain.order.entity import ActivityKind, Order, OrderActivity
from domain.order.repository import OrderActivityRepository
from .entity import PurchaseOrder, PurchaseOrderStatus
from .fees import SupplierShare, group_lines_by_supplier
from .references import DEFAULT_MAX_ATTEMPTS, generate_supplier_order_ref, mint_with_retry
from .repository import PurchaseOrderRepository


class PurchaseOrderFanoutService:
    """
    采购单拆分

    业务规则：
    1. 每个 (订单, 供应商) 恰好一张采购单
    2. 引用码来源优先级：已有采购单 → 订单流水中记录过的引用码 → 新生成并记录流水
    3. 重复执行只刷新金额与订单行关联，不新增行、不改引用码
    """

    def __init__(
        self,
        purchase_orders: PurchaseOrderRepository,
        activities: OrderActivityRepository,
        *,
        ref_generator: Callable[[], str] = generate_supplier_order_ref,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self.purchase_orders = purchase_orders
        self.activities = activities
        self._generate = ref_generator
        self._max_attempts = max_attempts

    async def fan_out(self, order: Order) -> List[PurchaseOrder]:
        result: List[PurchaseOrder] = []
        for share in group_lines_by_supplier(order.items):
            existing = await self.purchase_orders.get_for_supplier(order.id, share.supplier_id)
            if existing is not None:
                existing.apply_amounts(share.customer_subtotal, share.supplier_amount, share.platform_fee)
                po = await self.purchase_orders.update(existing)
            else:
                po = await self._create(order.id, share)
            await self.purchase_orders.replace_items(po.id, share.order_item_ids)
            po.order_item_ids = list(share.order_item_ids)
            result.append(po)
        return result

    async def _logged_reference(self, order_id: int, supplier_id: int) -> Optional[str]:
        for activity in await self.activities.list_by_kind(order_id, ActivityKind.SUPPLIER_REF_CREATED.value):
            if activity.meta.get("supplier_id") == supplier_id and activity.meta.get("supplier_order_ref"):
                return activity.meta["supplier_order_ref"]
        return None

    async def _create(self, order_id: int, share: SupplierShare) -> PurchaseOrder:
        minted: List[str] = []

        async def create(code: str) -> PurchaseOrder:
            candidate = PurchaseOrder(
                id=None,
                order_id=order_id,
                supplier_id=share.supplier_id,
                supplier_order_ref=code,
                status=PurchaseOrderStatus.CREATED,
                subtotal=share.customer_subtotal,
                supplier_amount=share.supplier_amount,
                platform_fee=share.platform_fee,
            )
            try:
                return await self.purchase_orders.add(candidate)
            except ReferenceCollisionError:
                # 并发创建者可能已经写入了同一 (订单, 供应商)
                concurrent = await self.purchase_orders.get_for_supplier(order_id, share.supplier_id)
                if concurrent is not None:
                    return concurrent
                raise

        logged = await self._logged_reference(order_id, share.supplier_id)
        if logged:
            try:
                return await create(logged)
            except ReferenceCollisionError:
                pass

        def generate() -> str:
            code = self._generate()
            minted.append(code)
            return code

        po = await mint_with_retry(create, generate, max_attempts=self._max_attempts, kind="supplier_order_ref")
        if po.supplier_order_ref in minted:
            await self.activities.add(
                OrderActivity(
                    id=None,
                    order_id=order_id,
                    kind=ActivityKind.SUPPLIER_REF_CREATED.value,
                    message=f"Supplier order reference {po.supplier_order_ref} created",
                    meta={"supplier_id": share.supplier_id, "supplier_order_ref": po.supplier_order_ref},
                )
            )
        return po

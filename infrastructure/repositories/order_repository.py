"""
订单相关仓储实现 - 订单、供应商、报价、订单流水、费用流水与运营配置
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.common.exceptions import OrderNotFoundException
from domain.order.entity import (
    CommsReason,
    Order,
    OrderActivity,
    OrderItem,
    OrderStatus,
    Supplier,
)
from domain.order.repository import (
    OperatorSettingRepository,
    OrderActivityRepository,
    OrderCommsRepository,
    OrderRepository,
    SupplierOfferRepository,
    SupplierRepository,
)
from infrastructure.models.order import (
    OperatorSettingModel,
    OrderActivityModel,
    OrderCommsModel,
    OrderItemModel,
    OrderModel,
    SupplierModel,
    SupplierOfferModel,
)


logger = get_logger(__name__)


def _money(value) -> Optional[Decimal]:
    return Decimal(str(value)) if value is not None else None


class SQLAlchemyOrderRepository(OrderRepository):
    """订单仓储的SQLAlchemy实现（结算只读取金额与订单行，只写状态）"""

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def _item_to_entity(model: OrderItemModel) -> OrderItem:
        return OrderItem(
            id=model.id,
            order_id=model.order_id,
            product_id=model.product_id,
            quantity=model.quantity,
            unit_price=_money(model.unit_price),
            variant_id=model.variant_id,
            title=model.title,
            line_total=_money(model.line_total),
            chosen_supplier_id=model.chosen_supplier_id,
            chosen_supplier_unit_price=_money(model.chosen_supplier_unit_price),
        )

    def _to_entity(self, model: OrderModel) -> Order:
        return Order(
            id=model.id,
            status=OrderStatus(model.status),
            total=_money(model.total),
            subtotal=_money(model.subtotal) or Decimal("0"),
            service_fee=_money(model.service_fee) or Decimal("0"),
            customer_email=model.customer_email,
            customer_name=model.customer_name,
            customer_phone=model.customer_phone,
            items=[self._item_to_entity(item) for item in model.items],
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    async def get_by_id(self, order_id: int, *, for_update: bool = False) -> Optional[Order]:
        query = select(OrderModel).where(OrderModel.id == order_id)
        if for_update:
            query = query.with_for_update(of=OrderModel)
        result = await self.session.execute(query.execution_options(populate_existing=True))
        db_order = result.scalar_one_or_none()
        return self._to_entity(db_order) if db_order else None

    async def update_status(self, order: Order) -> None:
        result = await self.session.execute(select(OrderModel).where(OrderModel.id == order.id))
        db_order = result.scalar_one_or_none()
        if db_order is None:
            raise OrderNotFoundException(order.id)
        previous = db_order.status
        db_order.status = order.status.value
        db_order.updated_at = order.updated_at or datetime.now(timezone.utc)
        await self.session.flush()
        logger.info("order_status_updated", order_id=order.id, previous=previous, status=order.status.value)


class SQLAlchemySupplierRepository(SupplierRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: SupplierModel) -> Supplier:
        return Supplier(
            id=model.id,
            name=model.name,
            email=model.email,
            phone=model.phone,
            is_active=model.is_active,
            payout_subaccount_code=model.payout_subaccount_code,
            recipient_code=model.recipient_code,
            bank_code=model.bank_code,
            account_number=model.account_number,
            account_name=model.account_name,
        )

    async def get_by_id(self, supplier_id: int) -> Optional[Supplier]:
        result = await self.session.execute(select(SupplierModel).where(SupplierModel.id == supplier_id))
        db_supplier = result.scalar_one_or_none()
        return self._to_entity(db_supplier) if db_supplier else None

    async def get_many(self, supplier_ids: Iterable[int]) -> Dict[int, Supplier]:
        ids = {sid for sid in supplier_ids if sid is not None}
        if not ids:
            return {}
        result = await self.session.execute(select(SupplierModel).where(SupplierModel.id.in_(ids)))
        return {m.id: self._to_entity(m) for m in result.scalars().all()}

    async def set_recipient_code(self, supplier_id: int, recipient_code: str) -> None:
        result = await self.session.execute(select(SupplierModel).where(SupplierModel.id == supplier_id))
        db_supplier = result.scalar_one_or_none()
        if db_supplier is None:
            return
        db_supplier.recipient_code = recipient_code
        await self.session.flush()
        logger.info("supplier_recipient_saved", supplier_id=supplier_id)


class SQLAlchemySupplierOfferRepository(SupplierOfferRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    async def cheapest_price(self, product_id: int, variant_id: Optional[int]) -> Optional[Decimal]:
        query = select(func.min(SupplierOfferModel.price)).where(
            SupplierOfferModel.product_id == product_id,
            SupplierOfferModel.is_active.is_(True),
            SupplierOfferModel.in_stock.is_(True),
        )
        if variant_id is not None:
            query = query.where(SupplierOfferModel.variant_id == variant_id)
        result = await self.session.execute(query)
        return _money(result.scalar())


class SQLAlchemyOrderActivityRepository(OrderActivityRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: OrderActivityModel) -> OrderActivity:
        return OrderActivity(
            id=model.id,
            order_id=model.order_id,
            kind=model.kind,
            message=model.message,
            meta=dict(model.meta or {}),
            created_at=model.created_at,
        )

    async def add(self, activity: OrderActivity) -> OrderActivity:
        kind = activity.kind.value if hasattr(activity.kind, "value") else activity.kind
        db_activity = OrderActivityModel(
            order_id=activity.order_id,
            kind=kind,
            message=activity.message,
            meta=activity.meta,
            created_at=activity.created_at or datetime.now(timezone.utc),
        )
        self.session.add(db_activity)
        await self.session.flush()
        return self._to_entity(db_activity)

    async def list_by_kind(self, order_id: int, kind: str) -> List[OrderActivity]:
        kind = kind.value if hasattr(kind, "value") else kind
        result = await self.session.execute(
            select(OrderActivityModel)
            .where(OrderActivityModel.order_id == order_id, OrderActivityModel.kind == kind)
            .order_by(OrderActivityModel.created_at.desc(), OrderActivityModel.id.desc())
        )
        return [self._to_entity(m) for m in result.scalars().all()]


class SQLAlchemyOrderCommsRepository(OrderCommsRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    async def upsert_fee_slice(self, order_id: int, payment_id: int, amount: Decimal) -> None:
        result = await self.session.execute(
            select(OrderCommsModel).where(
                OrderCommsModel.order_id == order_id,
                OrderCommsModel.payment_id == payment_id,
                OrderCommsModel.reason == CommsReason.SERVICE_FEE_SLICE.value,
            )
        )
        row = result.scalars().first()
        if row is None:
            self.session.add(OrderCommsModel(
                order_id=order_id,
                payment_id=payment_id,
                reason=CommsReason.SERVICE_FEE_SLICE.value,
                amount=amount,
            ))
        else:
            row.amount = amount
        await self.session.flush()

    async def ensure_supplier_charge(
        self, order_id: int, supplier_id: int, reason: CommsReason, amount: Decimal
    ) -> bool:
        result = await self.session.execute(
            select(func.count(OrderCommsModel.id)).where(
                OrderCommsModel.order_id == order_id,
                OrderCommsModel.supplier_id == supplier_id,
                OrderCommsModel.reason == reason.value,
            )
        )
        if (result.scalar() or 0) > 0:
            return False
        self.session.add(OrderCommsModel(
            order_id=order_id,
            supplier_id=supplier_id,
            reason=reason.value,
            amount=amount,
        ))
        await self.session.flush()
        return True

    async def sum_by_reason(self, order_id: int, reason: CommsReason) -> Decimal:
        result = await self.session.execute(
            select(func.coalesce(func.sum(OrderCommsModel.amount), 0)).where(
                OrderCommsModel.order_id == order_id,
                OrderCommsModel.reason == reason.value,
            )
        )
        return Decimal(str(result.scalar() or 0))


class SQLAlchemyOperatorSettingRepository(OperatorSettingRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_values(self, keys: Iterable[str]) -> Dict[str, str]:
        keys = list(keys)
        if not keys:
            return {}
        result = await self.session.execute(
            select(OperatorSettingModel.key, OperatorSettingModel.value).where(OperatorSettingModel.key.in_(keys))
        )
        return {key: value for key, value in result.all() if value is not None}

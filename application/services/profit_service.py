"""
Profit accounting for a PAID payment (recomputable, latest write wins).
"""
from __future__ import annotations

from decimal import Decimal
from typing import Callable, List, Optional

from application.dtos.settlement import ProfitBreakdownDTO, ProfitLineDTO
from application.ports.settings_provider import SettlementSettingsProvider
from application.ports.settlement_lock import SettlementLock
from core.logging_config import get_logger
from domain.common.exceptions import InvalidStateTransitionException, PaymentIntentNotFoundException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.entity import ActivityKind, CommsReason, Order, OrderActivity
from domain.payment.entity import PaymentChannel, PaymentIntent, PaymentStatus
from domain.settlement.fees import ZERO, estimate_gateway_fee
from domain.settlement.profit import CostLine, CostSource, ProfitBreakdown, compute_profit
from domain.order.repository import SupplierOfferRepository


logger = get_logger(__name__)


async def cost_lines(order: Order, offers: SupplierOfferRepository) -> List[CostLine]:
    """逐行确定单位成本：锁定的供应商单价 → 同规格最低报价 → 同商品最低报价 → 0"""
    lines: List[CostLine] = []
    for item in order.items:
        qty = item.effective_quantity
        if item.chosen_supplier_unit_price is not None:
            lines.append(CostLine(item.id, qty, Decimal(item.chosen_supplier_unit_price), CostSource.SUPPLIER_PRICE))
            continue
        if item.variant_id is not None:
            price = await offers.cheapest_price(item.product_id, item.variant_id)
            if price is not None:
                lines.append(CostLine(item.id, qty, price, CostSource.OFFER_EXACT))
                continue
        price = await offers.cheapest_price(item.product_id, None)
        if price is not None:
            lines.append(CostLine(item.id, qty, price, CostSource.OFFER_PRODUCT))
        else:
            lines.append(CostLine(item.id, qty, ZERO, CostSource.NONE))
    return lines


def to_dto(breakdown: ProfitBreakdown) -> ProfitBreakdownDTO:
    return ProfitBreakdownDTO(
        payment_id=breakdown.payment_id,
        order_id=breakdown.order_id,
        amount_paid=breakdown.amount_paid,
        cogs=breakdown.cogs,
        estimated_cogs=breakdown.estimated_cogs,
        cogs_estimated=breakdown.cogs_estimated,
        gateway_fee=breakdown.gateway_fee,
        comms_cost=breakdown.comms_cost,
        base_fee=breakdown.base_fee,
        profit=breakdown.profit,
        mode=breakdown.mode.value,
        computed_at=breakdown.computed_at,
        lines=[
            ProfitLineDTO(
                order_item_id=ln.order_item_id,
                quantity=ln.quantity,
                unit_cost=ln.unit_cost,
                total=ln.total,
                source=ln.source.value,
            )
            for ln in breakdown.lines
        ],
    )


class ProfitService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        *,
        settings_provider: SettlementSettingsProvider,
        lock: Optional[SettlementLock] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._settings_provider = settings_provider
        self._lock = lock

    async def compute_for_payment(
        self, payment_id: int, *, uow: Optional[AbstractUnitOfWork] = None
    ) -> Optional[ProfitBreakdown]:
        if uow is None:
            async with self._uow_factory() as own:
                return await self._compute(payment_id, own)
        return await self._compute(payment_id, uow)

    async def _gateway_fee(self, intent: PaymentIntent) -> Decimal:
        if intent.fee_amount and intent.fee_amount > 0:
            return intent.fee_amount
        if intent.channel == PaymentChannel.BANK_TRANSFER.value:
            return ZERO
        snapshot = await self._settings_provider.get()
        return estimate_gateway_fee(intent.amount, snapshot.fee_schedule)

    async def _compute(self, payment_id: int, uow: AbstractUnitOfWork) -> Optional[ProfitBreakdown]:
        intent = await uow.payment_intents.get_by_id(payment_id)
        if intent is None or intent.status != PaymentStatus.PAID:
            return None
        order = await uow.orders.get_by_id(intent.order_id)
        if order is None:
            return None

        snapshot = await self._settings_provider.get()
        breakdown = compute_profit(
            payment_id=intent.id,
            order_id=order.id,
            amount_paid=intent.amount,
            lines=await cost_lines(order, uow.supplier_offers),
            gateway_fee=await self._gateway_fee(intent),
            comms_cost=await uow.order_comms.sum_by_reason(order.id, CommsReason.SUPPLIER_NOTIFY),
            base_fee=snapshot.base_fee,
            mode=snapshot.profit_mode,
        )
        saved = await uow.profits.upsert(breakdown)
        await uow.order_activities.add(OrderActivity(
            id=None,
            order_id=order.id,
            kind=ActivityKind.PROFIT_COMPUTED.value,
            message=f"Profit {saved.profit} ({saved.mode.value})",
            meta={
                "payment_id": intent.id,
                "profit": str(saved.profit),
                "mode": saved.mode.value,
                "cogs_estimated": saved.cogs_estimated,
            },
        ))
        logger.info(
            "profit_computed",
            payment_id=intent.id,
            order_id=order.id,
            profit=str(saved.profit),
            mode=saved.mode.value,
            estimated_cogs=str(saved.estimated_cogs),
        )
        return saved

    async def recompute(self, payment_id: int) -> ProfitBreakdownDTO:
        """管理端重算：刷新运营配置后按最新数据覆盖写入"""
        async with self._uow_factory(readonly=True) as uow:
            intent = await uow.payment_intents.get_by_id(payment_id)
        if intent is None:
            raise PaymentIntentNotFoundException(payment_id=payment_id)
        if intent.status != PaymentStatus.PAID:
            raise InvalidStateTransitionException("ProfitBreakdown", intent.status.value, "COMPUTED")

        await self._settings_provider.refresh()
        if self._lock is not None:
            async with self._lock.hold(intent.order_id):
                breakdown = await self.compute_for_payment(payment_id)
        else:
            breakdown = await self.compute_for_payment(payment_id)
        return to_dto(breakdown)

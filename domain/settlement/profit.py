"""
利润核算（纯计算）

simple   = 实付 - 货品成本
accurate = 实付 - (货品成本 + 网关手续费 + 通知成本 + 平台基础费)

货品成本优先使用订单行上锁定的供应商单价；缺失时用报价估算，并单独标记为估算值。
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from .fees import ZERO, quantize_money


class ProfitMode(str, Enum):
    SIMPLE = "simple"
    ACCURATE = "accurate"

    @classmethod
    def parse(cls, value: Optional[str], default: "ProfitMode" = None) -> "ProfitMode":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return default or cls.ACCURATE


class CostSource(str, Enum):
    SUPPLIER_PRICE = "supplier_price"  # 订单行锁定的供应商单价
    OFFER_EXACT = "offer_exact"        # 同商品同规格最低报价
    OFFER_PRODUCT = "offer_product"    # 同商品任意规格最低报价
    NONE = "none"


@dataclass(frozen=True)
class CostLine:
    order_item_id: Optional[int]
    quantity: int
    unit_cost: Decimal
    source: CostSource

    @property
    def total(self) -> Decimal:
        return quantize_money(self.unit_cost * self.quantity)

    @property
    def estimated(self) -> bool:
        return self.source in (CostSource.OFFER_EXACT, CostSource.OFFER_PRODUCT)


@dataclass
class ProfitBreakdown:
    payment_id: int
    order_id: int
    amount_paid: Decimal
    cogs: Decimal
    estimated_cogs: Decimal
    gateway_fee: Decimal
    comms_cost: Decimal
    base_fee: Decimal
    profit: Decimal
    mode: ProfitMode
    lines: List[CostLine] = field(default_factory=list)
    computed_at: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def cogs_estimated(self) -> bool:
        return self.estimated_cogs > 0

    def lines_as_dicts(self) -> list:
        return [
            {
                "order_item_id": ln.order_item_id,
                "quantity": ln.quantity,
                "unit_cost": str(ln.unit_cost),
                "total": str(ln.total),
                "source": ln.source.value,
            }
            for ln in self.lines
        ]


def compute_profit(
    *,
    payment_id: int,
    order_id: int,
    amount_paid: Decimal,
    lines: List[CostLine],
    gateway_fee: Decimal,
    comms_cost: Decimal,
    base_fee: Decimal,
    mode: ProfitMode,
    now: Optional[datetime] = None,
) -> ProfitBreakdown:
    # cogs 为全部货品成本；其中来自报价估算的部分另计于 estimated_cogs
    cogs = quantize_money(sum((ln.total for ln in lines), ZERO))
    estimated = quantize_money(sum((ln.total for ln in lines if ln.estimated), ZERO))
    gateway_fee = quantize_money(gateway_fee or ZERO)
    comms_cost = quantize_money(comms_cost or ZERO)
    base_fee = quantize_money(base_fee or ZERO)
    paid = quantize_money(amount_paid)

    if mode == ProfitMode.SIMPLE:
        profit = paid - cogs
    else:
        profit = paid - (cogs + gateway_fee + comms_cost + base_fee)

    return ProfitBreakdown(
        payment_id=payment_id,
        order_id=order_id,
        amount_paid=paid,
        cogs=cogs,
        estimated_cogs=estimated,
        gateway_fee=gateway_fee,
        comms_cost=comms_cost,
        base_fee=base_fee,
        profit=quantize_money(profit),
        mode=mode,
        lines=list(lines),
        computed_at=now or datetime.now(timezone.utc),
    )

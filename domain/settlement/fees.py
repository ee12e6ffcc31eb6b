"""
费用与分账计算（纯函数，无 IO）
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional

from domain.order.entity import OrderItem

CENT = Decimal("0.01")
ZERO = Decimal("0")


def quantize_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor(amount: Decimal) -> int:
    """主币单位 → 最小货币单位（kobo/cent）"""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor(value) -> Decimal:
    return quantize_money(Decimal(str(value)) / 100)


@dataclass(frozen=True)
class FeeSchedule:
    """网关费率：本地卡按比例+固定费（超过阈值才收固定费）并封顶；国际卡比例更高且不封顶"""
    local_rate: Decimal = Decimal("0.015")
    local_flat: Decimal = Decimal("100")
    local_flat_threshold: Decimal = Decimal("2500")
    local_cap: Decimal = Decimal("2000")
    international_rate: Decimal = Decimal("0.039")
    international_flat: Decimal = Decimal("100")


def estimate_gateway_fee(amount: Decimal, schedule: FeeSchedule, *, international: bool = False) -> Decimal:
    amount = Decimal(amount)
    if amount <= 0:
        return ZERO
    if international:
        return quantize_money(amount * schedule.international_rate + schedule.international_flat)
    fee = amount * schedule.local_rate
    if amount > schedule.local_flat_threshold:
        fee += schedule.local_flat
    return quantize_money(min(fee, schedule.local_cap))


def service_fee_slice(service_fee_total: Decimal, paid_amount: Decimal, order_total: Decimal) -> Decimal:
    """本次支付分摊到的服务费：service_fee × min(1, paid / total)"""
    if not service_fee_total or not paid_amount or not order_total:
        return ZERO
    if service_fee_total <= 0 or paid_amount <= 0 or order_total <= 0:
        return ZERO
    ratio = min(Decimal(1), Decimal(paid_amount) / Decimal(order_total))
    return quantize_money(Decimal(service_fee_total) * ratio)


@dataclass
class SupplierShare:
    supplier_id: int
    supplier_amount: Decimal = ZERO
    customer_subtotal: Decimal = ZERO
    order_item_ids: List[int] = field(default_factory=list)

    @property
    def platform_fee(self) -> Decimal:
        return max(ZERO, self.customer_subtotal - self.supplier_amount)


def group_lines_by_supplier(items: Iterable[OrderItem]) -> List[SupplierShare]:
    """按实际选定的供应商分组（未分配供应商的行不参与），保持首次出现顺序"""
    groups: Dict[int, SupplierShare] = {}
    for item in items:
        if item.chosen_supplier_id is None:
            continue
        share = groups.get(item.chosen_supplier_id)
        if share is None:
            share = groups[item.chosen_supplier_id] = SupplierShare(supplier_id=item.chosen_supplier_id)
        qty = item.effective_quantity
        unit_cost = Decimal(item.chosen_supplier_unit_price or 0)
        share.supplier_amount = quantize_money(share.supplier_amount + unit_cost * qty)
        share.customer_subtotal = quantize_money(share.customer_subtotal + item.customer_total)
        if item.id is not None:
            share.order_item_ids.append(item.id)
    return list(groups.values())


@dataclass(frozen=True)
class SplitPart:
    supplier_id: int
    subaccount: str
    amount: Decimal

    @property
    def share_minor(self) -> int:
        return to_minor(self.amount)


@dataclass(frozen=True)
class SplitPlan:
    parts: tuple

    @property
    def total(self) -> Decimal:
        return quantize_money(sum((p.amount for p in self.parts), ZERO))

    def as_metadata(self) -> list:
        return [
            {"supplier_id": p.supplier_id, "subaccount": p.subaccount, "amount": str(p.amount), "share": p.share_minor}
            for p in self.parts
        ]


def build_split_plan(shares: Iterable[SupplierShare], subaccounts: Dict[int, Optional[str]]) -> Optional[SplitPlan]:
    """只保留有分账子账户且金额为正的供应商；全部被剔除时返回 None"""
    parts = []
    for share in shares:
        subaccount = subaccounts.get(share.supplier_id)
        if not subaccount or share.supplier_amount <= 0:
            continue
        parts.append(SplitPart(supplier_id=share.supplier_id, subaccount=subaccount, amount=share.supplier_amount))
    if not parts:
        return None
    return SplitPlan(parts=tuple(parts))

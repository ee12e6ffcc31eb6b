"""
结算领域实体 - 采购单、供应商资金分配、供应商台账
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional

from domain.common.exceptions import InvalidStateTransitionException


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class PurchaseOrderStatus(str, Enum):
    """采购单状态（只前进）"""
    CREATED = "CREATED"
    FUNDED = "FUNDED"
    DISPATCHED = "DISPATCHED"
    DELIVERED = "DELIVERED"
    CANCELED = "CANCELED"


class PayoutStatus(str, Enum):
    HELD = "HELD"
    RELEASED = "RELEASED"


class AllocationStatus(str, Enum):
    """供应商分配状态（旧数据中的 PENDING 迁移为 HELD）"""
    HELD = "HELD"
    PAID = "PAID"
    FAILED = "FAILED"
    REVERSED = "REVERSED"


class LedgerEntryType(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


# 允许的分配状态迁移（只前进，FAILED 可重试为 PAID）
_ALLOCATION_TRANSITIONS = {
    AllocationStatus.HELD: {AllocationStatus.PAID, AllocationStatus.FAILED, AllocationStatus.REVERSED},
    AllocationStatus.FAILED: {AllocationStatus.PAID},
    AllocationStatus.PAID: set(),
    AllocationStatus.REVERSED: set(),
}


@dataclass
class PurchaseOrder:
    """
    采购单 - 一个订单对一个供应商的采购记录

    业务规则：
    1. (order_id, supplier_id) 唯一
    2. supplier_order_ref 一旦生成不再修改
    3. supplier_amount <= subtotal，platform_fee = subtotal - supplier_amount
    """

    id: Optional[int]
    order_id: int
    supplier_id: int
    supplier_order_ref: str
    status: PurchaseOrderStatus = PurchaseOrderStatus.CREATED
    subtotal: Decimal = field(default_factory=lambda: Decimal("0"))
    supplier_amount: Decimal = field(default_factory=lambda: Decimal("0"))
    platform_fee: Decimal = field(default_factory=lambda: Decimal("0"))
    payout_status: PayoutStatus = PayoutStatus.HELD
    order_item_ids: List[int] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)

    def apply_amounts(self, subtotal: Decimal, supplier_amount: Decimal, platform_fee: Decimal) -> None:
        """刷新金额，引用码保持不变"""
        self.subtotal = subtotal
        self.supplier_amount = supplier_amount
        self.platform_fee = platform_fee
        self.updated_at = datetime.now(timezone.utc)

    def mark_funded(self) -> bool:
        """CREATED → FUNDED；已越过 FUNDED 的不回退。返回是否变化"""
        if self.status != PurchaseOrderStatus.CREATED:
            return False
        self.status = PurchaseOrderStatus.FUNDED
        self.updated_at = datetime.now(timezone.utc)
        return True

    def release_payout(self) -> None:
        self.payout_status = PayoutStatus.RELEASED
        self.updated_at = datetime.now(timezone.utc)


@dataclass
class SupplierPaymentAllocation:
    """
    供应商资金分配 - 一笔支付中属于某采购单的供应商成本

    业务规则：
    1. (payment_id, purchase_order_id) 唯一
    2. 状态只前进，已 PAID 的不会回到 HELD
    """

    id: Optional[int]
    payment_id: int
    order_id: int
    supplier_id: int
    purchase_order_id: int
    amount: Decimal
    status: AllocationStatus = AllocationStatus.HELD
    transfer_reference: Optional[str] = None
    released_at: Optional[datetime] = None
    note: Optional[str] = None
    meta: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        self.released_at = _ensure_utc(self.released_at)
        if self.meta is None:
            self.meta = {}

    def _transition(self, target: AllocationStatus) -> None:
        if target not in _ALLOCATION_TRANSITIONS[self.status]:
            raise InvalidStateTransitionException("SupplierPaymentAllocation", self.status.value, target.value)
        self.status = target
        self.updated_at = datetime.now(timezone.utc)

    def mark_paid(self, *, transfer_reference: Optional[str] = None, note: Optional[str] = None) -> bool:
        """标记已付；已是 PAID 时幂等返回 False"""
        if self.status == AllocationStatus.PAID:
            return False
        self._transition(AllocationStatus.PAID)
        self.released_at = self.updated_at
        if transfer_reference:
            self.transfer_reference = transfer_reference
        if note:
            self.note = note
        return True

    def mark_failed(self, reason: Optional[str] = None) -> None:
        if self.status == AllocationStatus.FAILED:
            self.meta["last_error"] = reason
            return
        self._transition(AllocationStatus.FAILED)
        self.meta["last_error"] = reason

    def reverse(self, note: Optional[str] = None) -> None:
        self._transition(AllocationStatus.REVERSED)
        if note:
            self.note = note


@dataclass
class SupplierLedgerEntry:
    id: Optional[int]
    supplier_id: int
    entry_type: LedgerEntryType
    amount: Decimal
    reference_type: str
    reference_id: str
    currency: str = "NGN"
    note: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.created_at = _ensure_utc(self.created_at)

"""
订单领域实体 - 订单、订单行、供应商、报价与订单流水
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional



def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class OrderStatus(str, Enum):
    """订单状态枚举"""
    PENDING = "PENDING"                            # 待支付
    AWAITING_FULFILLMENT = "AWAITING_FULFILLMENT"  # 已支付，待供应商确认履约
    PAID = "PAID"                                  # 已支付（跳过履约确认）
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELED = "CANCELED"


class ActivityKind(str, Enum):
    """订单流水类型"""
    SUPPLIER_REF_CREATED = "SUPPLIER_REF_CREATED"
    FINALIZE_PAID = "FINALIZE_PAID"
    VERIFY_MISMATCH = "VERIFY_MISMATCH"
    VERIFY_FAILED = "VERIFY_FAILED"
    AWAITING_APPROVAL = "AWAITING_APPROVAL"
    TRANSFER_SKIPPED = "TRANSFER_SKIPPED"
    PROFIT_COMPUTED = "PROFIT_COMPUTED"
    ALLOCATION_MARKED_PAID = "ALLOCATION_MARKED_PAID"


class CommsReason(str, Enum):
    """订单费用流水原因"""
    SERVICE_FEE_SLICE = "SERVICE_FEE_SLICE"  # 本次支付对应的服务费份额
    SUPPLIER_NOTIFY = "SUPPLIER_NOTIFY"      # 通知供应商产生的短信/邮件成本


@dataclass
class OrderItem:
    id: Optional[int]
    order_id: int
    product_id: int
    quantity: int
    unit_price: Decimal
    variant_id: Optional[int] = None
    title: Optional[str] = None
    line_total: Optional[Decimal] = None
    chosen_supplier_id: Optional[int] = None
    chosen_supplier_unit_price: Optional[Decimal] = None

    @property
    def effective_quantity(self) -> int:
        """数量下限为1"""
        return max(1, int(self.quantity or 0))

    @property
    def customer_total(self) -> Decimal:
        if self.line_total is not None:
            return Decimal(self.line_total)
        return Decimal(self.unit_price or 0) * self.effective_quantity


@dataclass
class Order:
    """
    订单聚合根（结算只关心金额、状态与订单行）

    业务规则：支付确认只推进一次状态（PENDING → AWAITING_FULFILLMENT / PAID）
    """

    id: Optional[int]
    status: OrderStatus
    total: Decimal
    subtotal: Decimal = field(default_factory=lambda: Decimal("0"))
    service_fee: Decimal = field(default_factory=lambda: Decimal("0"))
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    items: List[OrderItem] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)

    def advance_on_payment(self, skip_fulfillment_confirmation: bool = False) -> bool:
        """支付确认后推进订单状态；返回是否发生变化"""
        if self.status != OrderStatus.PENDING:
            return False
        self.status = (
            OrderStatus.PAID if skip_fulfillment_confirmation else OrderStatus.AWAITING_FULFILLMENT
        )
        self.updated_at = datetime.now(timezone.utc)
        return True


@dataclass
class Supplier:
    id: Optional[int]
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool = True
    # 网关分账子账户（用于 split）
    payout_subaccount_code: Optional[str] = None
    # 转账收款人（用于直接转账），缺失时可由银行信息懒创建
    recipient_code: Optional[str] = None
    bank_code: Optional[str] = None
    account_number: Optional[str] = None
    account_name: Optional[str] = None

    def has_bank_details(self) -> bool:
        return bool(self.bank_code and self.account_number)


@dataclass
class SupplierOffer:
    id: Optional[int]
    supplier_id: int
    product_id: int
    price: Decimal
    variant_id: Optional[int] = None
    in_stock: bool = True
    is_active: bool = True


@dataclass
class OrderActivity:
    """订单流水（追加写入）"""
    id: Optional[int]
    order_id: int
    kind: str
    message: Optional[str] = None
    meta: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.created_at = _ensure_utc(self.created_at)
        if self.meta is None:
            self.meta = {}


@dataclass
class OrderComm:
    """订单费用流水：服务费份额与通知成本"""
    id: Optional[int]
    order_id: int
    reason: CommsReason
    amount: Decimal
    supplier_id: Optional[int] = None
    payment_id: Optional[int] = None
    created_at: Optional[datetime] = None

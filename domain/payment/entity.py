"""
支付领域实体 - 支付意向（PaymentIntent）聚合根与结算事件
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional
from enum import Enum

from domain.common.exceptions import DomainValidationException, InvalidStateTransitionException


class PaymentStatus(str, Enum):
    """支付意向状态枚举（PENDING 之外均为终态）"""
    PENDING = "PENDING"      # 待支付
    PAID = "PAID"            # 已支付（不可离开）
    FAILED = "FAILED"        # 支付失败
    CANCELED = "CANCELED"    # 已取消（被兄弟意向取代或超时）


class PaymentChannel(str, Enum):
    """支付渠道"""
    PAYSTACK = "paystack"            # 网关托管收银台
    BANK_TRANSFER = "bank_transfer"  # 线下转账，人工或自动确认


class FinalizationEventType(str, Enum):
    """结算事件类型，每个 (payment_id, event_type) 至多一条，作为幂等闸门"""
    FINALIZE_PAID = "FINALIZE_PAID"
    FANOUT_COMPLETED = "FANOUT_COMPLETED"
    SUPPLIER_NOTIFIED = "SUPPLIER_NOTIFIED"
    PAYOUTS_DISPATCHED = "PAYOUTS_DISPATCHED"
    RECEIPT_ISSUED = "RECEIPT_ISSUED"
    PROFIT_COMPUTED = "PROFIT_COMPUTED"
    ORDER_PAID_EMAIL_SENT = "ORDER_PAID_EMAIL_SENT"
    SPLIT_USED = "SPLIT_USED"


_TERMINAL = frozenset({PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.CANCELED})


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass
class PaymentIntent:
    """
    支付意向聚合根 - 订单的一次付款尝试

    业务规则：
    1. reference 全局唯一
    2. 金额必须大于0
    3. PENDING → {PAID, FAILED, CANCELED}，三者均为终态
    4. 同一订单至多一个 PAID 意向
    """

    id: Optional[int]
    order_id: int
    reference: str
    amount: Decimal
    status: PaymentStatus
    channel: str = PaymentChannel.PAYSTACK.value
    provider: str = "paystack"
    fee_amount: Decimal = field(default_factory=lambda: Decimal("0"))

    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # 网关交互快照
    provider_payload: dict = field(default_factory=dict)
    init_payload: dict = field(default_factory=dict)

    # 收据
    receipt_no: Optional[str] = None
    receipt_issued_at: Optional[datetime] = None
    receipt_data: Optional[dict] = None

    # 按供应商的分配快照（反范式，便于查询）
    breakdown: Optional[dict] = None

    def __post_init__(self):
        if self.amount is None or self.amount <= 0:
            raise DomainValidationException(
                f"支付金额必须大于0: {self.amount}",
                field="amount"
            )
        if not self.reference:
            raise DomainValidationException("支付引用不能为空", field="reference")
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        self.paid_at = _ensure_utc(self.paid_at)
        self.receipt_issued_at = _ensure_utc(self.receipt_issued_at)
        if self.provider_payload is None:
            self.provider_payload = {}
        if self.init_payload is None:
            self.init_payload = {}

    @property
    def is_terminal(self) -> bool:
        return self.status in _TERMINAL

    def is_fresh(self, ttl_minutes: int, now: Optional[datetime] = None) -> bool:
        """是否在有效期内（仍可复用同一收银台链接）"""
        if self.created_at is None:
            return True
        now = now or datetime.now(timezone.utc)
        return now - self.created_at < timedelta(minutes=ttl_minutes)

    @property
    def authorization_url(self) -> Optional[str]:
        return (self.init_payload or {}).get("authorization_url")

    def _ensure_pending(self, target: PaymentStatus) -> None:
        if self.status != PaymentStatus.PENDING:
            raise InvalidStateTransitionException("PaymentIntent", self.status.value, target.value)

    def mark_paid(
        self,
        amount: Decimal,
        fee: Decimal,
        paid_at: Optional[datetime] = None,
        channel: Optional[str] = None,
        payload: Optional[dict] = None,
    ) -> None:
        """
        标记为已支付，写入网关确认的金额与手续费

        业务规则：只能从 PENDING 转为 PAID
        """
        self._ensure_pending(PaymentStatus.PAID)
        if amount is None or amount <= 0:
            raise DomainValidationException(f"支付金额必须大于0: {amount}", field="amount")
        self.status = PaymentStatus.PAID
        self.amount = amount
        self.fee_amount = fee if fee is not None and fee >= 0 else Decimal("0")
        self.paid_at = _ensure_utc(paid_at) or datetime.now(timezone.utc)
        if channel:
            self.channel = channel
        if payload:
            self.provider_payload = {**(self.provider_payload or {}), "verification": payload}
        self.updated_at = datetime.now(timezone.utc)

    def mark_failed(self, payload: Optional[dict] = None) -> None:
        self._ensure_pending(PaymentStatus.FAILED)
        self.status = PaymentStatus.FAILED
        if payload:
            self.provider_payload = {**(self.provider_payload or {}), "verification": payload}
        self.updated_at = datetime.now(timezone.utc)

    def cancel(self) -> None:
        self._ensure_pending(PaymentStatus.CANCELED)
        self.status = PaymentStatus.CANCELED
        self.updated_at = datetime.now(timezone.utc)

    def attach_checkout(self, init_payload: dict, provider_payload: Optional[dict] = None) -> None:
        """记录收银台初始化请求与网关响应"""
        self.init_payload = dict(init_payload or {})
        if provider_payload is not None:
            self.provider_payload = {**(self.provider_payload or {}), "initialize": provider_payload}
        self.updated_at = datetime.now(timezone.utc)

    def issue_receipt(self, receipt_no: str, snapshot: dict, issued_at: Optional[datetime] = None) -> None:
        if self.status != PaymentStatus.PAID:
            raise InvalidStateTransitionException("Receipt", self.status.value, "ISSUED")
        if self.receipt_no:
            return
        self.receipt_no = receipt_no
        self.receipt_data = snapshot
        self.receipt_issued_at = _ensure_utc(issued_at) or datetime.now(timezone.utc)
        self.updated_at = self.receipt_issued_at


@dataclass
class FinalizationEvent:
    """结算事件（幂等闸门）：记录某个副作用已完成"""

    id: Optional[int]
    payment_id: int
    event_type: FinalizationEventType
    data: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.created_at = _ensure_utc(self.created_at)
        if self.data is None:
            self.data = {}

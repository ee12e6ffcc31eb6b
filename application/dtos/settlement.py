"""
数据传输对象（DTO）- 结算用例与表现层之间的数据传输
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_serializer

from core.response import utc_isoformat


class DTOBase(BaseModel):
    """Base DTO: datetimes as UTC-Z, Decimals as strings."""

    @model_serializer(mode="wrap")
    def _serialize_model(self, handler):  # type: ignore[override]
        data = handler(self)

        def convert(value):
            if isinstance(value, datetime):
                return utc_isoformat(value)
            if isinstance(value, Decimal):
                return str(value)
            if isinstance(value, list):
                return [convert(v) for v in value]
            if isinstance(value, tuple):
                return tuple(convert(v) for v in value)
            if isinstance(value, dict):
                return {k: convert(v) for k, v in value.items()}
            return value

        return convert(data)


# ============= 请求 =============

class InitPaymentRequest(DTOBase):
    order_id: int = Field(..., gt=0, description="订单ID")
    channel: Literal["paystack", "bank_transfer"] = Field(default="paystack", description="支付渠道")
    email: Optional[EmailStr] = Field(default=None, description="付款邮箱，缺省取订单邮箱")


class VerifyPaymentRequest(DTOBase):
    order_id: int = Field(..., gt=0)
    reference: str = Field(..., min_length=1, max_length=64)


class MarkAllocationPaidRequest(DTOBase):
    create_ledger: bool = Field(default=False, description="是否同时记一笔供应商台账 CREDIT")
    note: Optional[str] = Field(default=None, max_length=500)


# ============= 结果 =============

class BankTransferInstructions(DTOBase):
    bank_name: Optional[str] = None
    account_name: Optional[str] = None
    account_number: Optional[str] = None
    amount: Decimal
    reference: str


class CheckoutResult(DTOBase):
    order_id: int
    payment_id: int
    reference: str
    channel: str
    amount: Decimal
    status: str
    resumed: bool = False
    sandbox: bool = False
    authorization_url: Optional[str] = None
    split_applied: bool = False
    bank_transfer: Optional[BankTransferInstructions] = None


class VerificationResult(DTOBase):
    status: Literal["PAID", "FAILED", "PENDING", "CANCELED"]
    reference: str
    message: str
    payment_id: Optional[int] = None
    order_id: Optional[int] = None


class WebhookOutcome(DTOBase):
    """Webhook 处理结果（仅用于日志与测试，HTTP 层始终 200）"""
    processed: bool
    reason: str
    reference: Optional[str] = None
    event: Optional[str] = None


class PaymentStatusDTO(DTOBase):
    payment_id: int
    order_id: int
    reference: str
    status: str
    channel: str
    amount: Decimal
    fee_amount: Decimal
    paid_at: Optional[datetime] = None
    receipt_no: Optional[str] = None
    authorization_url: Optional[str] = None
    breakdown: Optional[dict[str, Any]] = None


class ReceiptDTO(DTOBase):
    receipt_no: str
    issued_at: Optional[datetime] = None
    payment_id: int
    reference: str
    data: dict[str, Any]


class FinalizationReport(DTOBase):
    payment_id: int
    core_executed: bool = False
    already_finalized: bool = False
    completed: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    pending: list[str] = Field(default_factory=list)


class PayoutItem(DTOBase):
    supplier_id: int
    allocation_id: int
    amount: Decimal
    status: str
    transfer_reference: Optional[str] = None
    reason: Optional[str] = None


class PayoutOutcome(DTOBase):
    payment_id: int
    mode: Literal["split", "sandbox", "transfer"]
    complete: bool
    reason: Optional[str] = None
    items: list[PayoutItem] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class ProfitLineDTO(DTOBase):
    order_item_id: Optional[int] = None
    quantity: int
    unit_cost: Decimal
    total: Decimal
    source: str


class ProfitBreakdownDTO(DTOBase):
    payment_id: int
    order_id: int
    amount_paid: Decimal
    cogs: Decimal
    estimated_cogs: Decimal
    cogs_estimated: bool
    gateway_fee: Decimal
    comms_cost: Decimal
    base_fee: Decimal
    profit: Decimal
    mode: str
    computed_at: Optional[datetime] = None
    lines: list[ProfitLineDTO] = Field(default_factory=list)


class AllocationDTO(DTOBase):
    model_config = ConfigDict(from_attributes=True)

    id: int
    payment_id: int
    order_id: int
    supplier_id: int
    purchase_order_id: int
    amount: Decimal
    status: str
    transfer_reference: Optional[str] = None
    released_at: Optional[datetime] = None
    note: Optional[str] = None
    ledger_entry_id: Optional[int] = None

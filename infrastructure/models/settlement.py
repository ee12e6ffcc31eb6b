"""
结算数据库模型：采购单、供应商分配、供应商台账、利润明细
"""
from sqlalchemy import (
    Column, Integer, String, DateTime, Text, JSON,
    Index, ForeignKey, UniqueConstraint
)

from .base import Base, Money, utcnow


class PurchaseOrderModel(Base):
    __tablename__ = "purchase_orders"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    supplier_id = Column(Integer, ForeignKey("suppliers.id", ondelete="RESTRICT"), nullable=False, index=True)
    supplier_order_ref = Column(String(32), nullable=False, unique=True, comment="供应商采购单号 SPO-XXXX-XXXX")
    status = Column(String(20), nullable=False, default="CREATED")
    subtotal = Column(Money(), nullable=False, default=0, comment="客户侧小计")
    supplier_amount = Column(Money(), nullable=False, default=0, comment="应付供应商")
    platform_fee = Column(Money(), nullable=False, default=0, comment="平台差价")
    payout_status = Column(String(20), nullable=False, default="HELD")
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("order_id", "supplier_id", name="uq_purchase_orders_order_supplier"),
    )

    def __repr__(self):
        return (
            f"<PurchaseOrderModel(id={self.id}, order_id={self.order_id}, "
            f"supplier_id={self.supplier_id}, ref='{self.supplier_order_ref}')>"
        )


class PurchaseOrderItemModel(Base):
    __tablename__ = "purchase_order_items"

    id = Column(Integer, primary_key=True)
    purchase_order_id = Column(
        Integer, ForeignKey("purchase_orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    order_item_id = Column(Integer, ForeignKey("order_items.id", ondelete="CASCADE"), nullable=False)

    __table_args__ = (
        UniqueConstraint("purchase_order_id", "order_item_id", name="uq_purchase_order_items_link"),
    )


class SupplierPaymentAllocationModel(Base):
    __tablename__ = "supplier_payment_allocations"

    id = Column(Integer, primary_key=True, index=True)
    payment_id = Column(Integer, ForeignKey("payment_intents.id", ondelete="CASCADE"), nullable=False, index=True)
    order_id = Column(Integer, nullable=False, index=True)
    supplier_id = Column(Integer, nullable=False, index=True)
    purchase_order_id = Column(Integer, ForeignKey("purchase_orders.id", ondelete="CASCADE"), nullable=False)
    amount = Column(Money(), nullable=False)
    status = Column(String(20), nullable=False, default="HELD", comment="HELD/PAID/FAILED/REVERSED")
    transfer_reference = Column(String(100), nullable=True)
    released_at = Column(DateTime(timezone=True), nullable=True)
    note = Column(Text, nullable=True)
    meta = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("payment_id", "purchase_order_id", name="uq_allocations_payment_po"),
    )


class SupplierLedgerEntryModel(Base):
    __tablename__ = "supplier_ledger_entries"

    id = Column(Integer, primary_key=True, index=True)
    supplier_id = Column(Integer, nullable=False, index=True)
    entry_type = Column(String(10), nullable=False, comment="CREDIT/DEBIT")
    amount = Column(Money(), nullable=False)
    currency = Column(String(3), nullable=False, default="NGN")
    reference_type = Column(String(40), nullable=False)
    reference_id = Column(String(64), nullable=False)
    note = Column(Text, nullable=True)
    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_ledger_supplier_reference", "supplier_id", "reference_type", "reference_id", "entry_type"),
    )


class ProfitBreakdownModel(Base):
    __tablename__ = "profit_breakdowns"

    id = Column(Integer, primary_key=True, index=True)
    payment_id = Column(Integer, ForeignKey("payment_intents.id", ondelete="CASCADE"), nullable=False, unique=True)
    order_id = Column(Integer, nullable=False, index=True)
    amount_paid = Column(Money(), nullable=False)
    cogs = Column(Money(), nullable=False)
    estimated_cogs = Column(Money(), nullable=False, default=0)
    gateway_fee = Column(Money(), nullable=False, default=0)
    comms_cost = Column(Money(), nullable=False, default=0)
    base_fee = Column(Money(), nullable=False, default=0)
    profit = Column(Money(), nullable=False)
    mode = Column(String(16), nullable=False)
    lines = Column(JSON, nullable=True)
    computed_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

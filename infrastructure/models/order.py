"""
订单、供应商及相关流水的数据库模型
"""
from sqlalchemy import (
    Boolean, Column, Integer, String, DateTime, Text, JSON,
    Index, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import relationship

from .base import Base, Money, utcnow


class OrderModel(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    status = Column(String(32), nullable=False, default="PENDING", index=True, comment="订单状态")
    total = Column(Money(), nullable=False, comment="订单总额（含服务费）")
    subtotal = Column(Money(), nullable=False, default=0, comment="商品小计")
    service_fee = Column(Money(), nullable=False, default=0, comment="服务费总额")

    customer_email = Column(String(255), nullable=True)
    customer_name = Column(String(255), nullable=True)
    customer_phone = Column(String(40), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    items = relationship("OrderItemModel", back_populates="order", lazy="selectin", order_by="OrderItemModel.id")

    def __repr__(self):
        return f"<OrderModel(id={self.id}, status='{self.status}', total={self.total})>"


class OrderItemModel(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, nullable=False, index=True)
    variant_id = Column(Integer, nullable=True)
    title = Column(String(255), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Money(), nullable=False, comment="客户单价")
    line_total = Column(Money(), nullable=True, comment="行合计（可空，空则单价×数量）")
    chosen_supplier_id = Column(Integer, ForeignKey("suppliers.id", ondelete="SET NULL"), nullable=True, index=True)
    chosen_supplier_unit_price = Column(Money(), nullable=True, comment="锁定的供应商单价")

    order = relationship("OrderModel", back_populates="items")


class SupplierModel(Base):
    __tablename__ = "suppliers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(40), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    payout_subaccount_code = Column(String(64), nullable=True, comment="网关分账子账户")
    recipient_code = Column(String(64), nullable=True, comment="网关转账收款人")
    bank_code = Column(String(16), nullable=True)
    account_number = Column(String(32), nullable=True)
    account_name = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class SupplierOfferModel(Base):
    __tablename__ = "supplier_offers"

    id = Column(Integer, primary_key=True, index=True)
    supplier_id = Column(Integer, ForeignKey("suppliers.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, nullable=False)
    variant_id = Column(Integer, nullable=True)
    price = Column(Money(), nullable=False)
    in_stock = Column(Boolean, nullable=False, default=True)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index("ix_supplier_offers_product_variant", "product_id", "variant_id"),
    )


class OrderActivityModel(Base):
    """订单流水（追加写入）"""
    __tablename__ = "order_activities"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    kind = Column(String(40), nullable=False, comment="流水类型")
    message = Column(Text, nullable=True)
    meta = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_order_activities_order_kind", "order_id", "kind"),
    )


class OrderCommsModel(Base):
    """订单费用流水：服务费份额（按支付）与供应商通知成本（按供应商）"""
    __tablename__ = "order_comms"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    supplier_id = Column(Integer, nullable=True)
    payment_id = Column(Integer, nullable=True)
    reason = Column(String(40), nullable=False)
    amount = Column(Money(), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_order_comms_order_reason", "order_id", "reason"),
    )


class OperatorSettingModel(Base):
    """运营配置键值表"""
    __tablename__ = "settings"

    id = Column(Integer, primary_key=True)
    key = Column(String(100), nullable=False)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("key", name="uq_settings_key"),
    )

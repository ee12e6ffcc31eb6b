"""
支付数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Column, Integer, String, DateTime, JSON,
    Index, ForeignKey, UniqueConstraint, text
)

from .base import Base, Money, utcnow


class PaymentIntentModel(Base):
    """
    支付意向数据库模型

    这是数据库表的映射，不包含业务逻辑
    所有业务规则都在 domain.payment.entity.PaymentIntent 中
    """
    __tablename__ = "payment_intents"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True, comment="订单ID")
    reference = Column(String(64), unique=True, nullable=False, comment="支付引用（网关交易引用）")

    amount = Column(Money(), nullable=False, comment="支付金额")
    fee_amount = Column(Money(), nullable=False, default=0, comment="网关手续费")

    status = Column(String(20), nullable=False, default="PENDING", index=True, comment="PENDING/PAID/FAILED/CANCELED")
    channel = Column(String(32), nullable=False, default="paystack", comment="支付渠道")
    provider = Column(String(32), nullable=False, default="paystack", comment="支付提供商")

    paid_at = Column(DateTime(timezone=True), nullable=True, comment="支付完成时间")
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True, comment="创建时间")
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False, comment="更新时间")

    provider_payload = Column(JSON, nullable=True, comment="网关响应快照")
    init_payload = Column(JSON, nullable=True, comment="收银台初始化参数")

    receipt_no = Column(String(40), unique=True, nullable=True, comment="收据编号")
    receipt_issued_at = Column(DateTime(timezone=True), nullable=True)
    receipt_data = Column(JSON, nullable=True, comment="收据快照")

    breakdown = Column(JSON, nullable=True, comment="按供应商的分配快照")

    __table_args__ = (
        Index("ix_payment_intents_order_status", "order_id", "status"),
        # 同一订单至多一个 PAID 意向
        Index(
            "uq_payment_intents_order_paid",
            "order_id",
            unique=True,
            postgresql_where=text("status = 'PAID'"),
            sqlite_where=text("status = 'PAID'"),
        ),
    )

    def __repr__(self):
        return (
            f"<PaymentIntentModel(id={self.id}, order_id={self.order_id}, "
            f"reference='{self.reference}', amount={self.amount}, status='{self.status}')>"
        )


class FinalizationEventModel(Base):
    """
    结算事件表

    (payment_id, event_type) 唯一约束是结算幂等的最终保障
    """
    __tablename__ = "finalization_events"

    id = Column(Integer, primary_key=True, index=True)
    payment_id = Column(
        Integer,
        ForeignKey("payment_intents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="支付意向ID"
    )
    event_type = Column(String(40), nullable=False, comment="事件类型")
    data = Column(JSON, nullable=True, comment="事件数据")
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("payment_id", "event_type", name="uq_finalization_events_payment_type"),
    )

    def __repr__(self):
        return f"<FinalizationEventModel(payment_id={self.payment_id}, event_type='{self.event_type}')>"

"""
支付仓储实现 - 使用SQLAlchemy实现支付意向与结算事件的数据访问
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.common.exceptions import PaymentIntentNotFoundException, ReferenceCollisionError
from domain.payment.entity import (
    FinalizationEvent,
    FinalizationEventType,
    PaymentIntent,
    PaymentStatus,
)
from domain.payment.repository import (
    DuplicateFinalizationEvent,
    FinalizationEventRepository,
    PaymentIntentRepository,
)
from infrastructure.models.payment import FinalizationEventModel, PaymentIntentModel


logger = get_logger(__name__)


class SQLAlchemyPaymentIntentRepository(PaymentIntentRepository):
    """支付意向仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentIntentModel) -> PaymentIntent:
        """将数据库模型转换为领域实体"""
        return PaymentIntent(
            id=model.id,
            order_id=model.order_id,
            reference=model.reference,
            amount=Decimal(str(model.amount)),
            status=PaymentStatus(model.status),
            channel=model.channel,
            provider=model.provider,
            fee_amount=Decimal(str(model.fee_amount or 0)),
            paid_at=model.paid_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
            provider_payload=dict(model.provider_payload or {}),
            init_payload=dict(model.init_payload or {}),
            receipt_no=model.receipt_no,
            receipt_issued_at=model.receipt_issued_at,
            receipt_data=model.receipt_data,
            breakdown=model.breakdown,
        )

    def _to_model(self, entity: PaymentIntent) -> PaymentIntentModel:
        """将领域实体转换为数据库模型"""
        return PaymentIntentModel(
            id=entity.id,
            order_id=entity.order_id,
            reference=entity.reference,
            amount=entity.amount,
            status=entity.status.value,
            channel=entity.channel,
            provider=entity.provider,
            fee_amount=entity.fee_amount,
            paid_at=entity.paid_at,
            created_at=entity.created_at or datetime.now(timezone.utc),
            updated_at=entity.updated_at or datetime.now(timezone.utc),
            provider_payload=entity.provider_payload,
            init_payload=entity.init_payload,
            receipt_no=entity.receipt_no,
            receipt_issued_at=entity.receipt_issued_at,
            receipt_data=entity.receipt_data,
            breakdown=entity.breakdown,
        )

    def _apply(self, db_intent: PaymentIntentModel, intent: PaymentIntent) -> None:
        db_intent.amount = intent.amount
        db_intent.status = intent.status.value
        db_intent.channel = intent.channel
        db_intent.provider = intent.provider
        db_intent.fee_amount = intent.fee_amount
        db_intent.paid_at = intent.paid_at
        db_intent.updated_at = intent.updated_at or datetime.now(timezone.utc)
        db_intent.provider_payload = intent.provider_payload
        db_intent.init_payload = intent.init_payload
        db_intent.receipt_no = intent.receipt_no
        db_intent.receipt_issued_at = intent.receipt_issued_at
        db_intent.receipt_data = intent.receipt_data
        db_intent.breakdown = intent.breakdown

    async def add(self, intent: PaymentIntent) -> PaymentIntent:
        """创建支付意向"""
        db_intent = self._to_model(intent)
        try:
            # 使用保存点，冲突时只回滚本次插入
            async with self.session.begin_nested():
                self.session.add(db_intent)
                await self.session.flush()
        except IntegrityError as e:
            logger.warning("payment_reference_conflict", reference=intent.reference, error=str(e.orig))
            raise ReferenceCollisionError(intent.reference, constraint="payment_intents.reference")
        await self.session.refresh(db_intent)
        logger.info(
            "payment_intent_created",
            payment_id=db_intent.id,
            order_id=db_intent.order_id,
            reference=db_intent.reference,
            channel=db_intent.channel,
        )
        return self._to_entity(db_intent)

    async def get_by_id(self, payment_id: int, *, for_update: bool = False) -> Optional[PaymentIntent]:
        query = select(PaymentIntentModel).where(PaymentIntentModel.id == payment_id)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query.execution_options(populate_existing=True))
        db_intent = result.scalar_one_or_none()
        return self._to_entity(db_intent) if db_intent else None

    async def get_by_reference(self, reference: str) -> Optional[PaymentIntent]:
        result = await self.session.execute(
            select(PaymentIntentModel)
            .where(PaymentIntentModel.reference == reference)
            .execution_options(populate_existing=True)
        )
        db_intent = result.scalar_one_or_none()
        return self._to_entity(db_intent) if db_intent else None

    async def list_for_order(
        self,
        order_id: int,
        *,
        status: Optional[PaymentStatus] = None,
        channel: Optional[str] = None,
    ) -> List[PaymentIntent]:
        query = select(PaymentIntentModel).where(PaymentIntentModel.order_id == order_id)
        if status is not None:
            query = query.where(PaymentIntentModel.status == status.value)
        if channel is not None:
            query = query.where(PaymentIntentModel.channel == channel)
        query = query.order_by(PaymentIntentModel.created_at.desc(), PaymentIntentModel.id.desc())
        result = await self.session.execute(query.execution_options(populate_existing=True))
        return [self._to_entity(m) for m in result.scalars().all()]

    async def get_paid_for_order(self, order_id: int) -> Optional[PaymentIntent]:
        result = await self.session.execute(
            select(PaymentIntentModel)
            .where(
                PaymentIntentModel.order_id == order_id,
                PaymentIntentModel.status == PaymentStatus.PAID.value,
            )
            .execution_options(populate_existing=True)
        )
        db_intent = result.scalars().first()
        return self._to_entity(db_intent) if db_intent else None

    async def compare_and_set_paid(self, intent: PaymentIntent) -> bool:
        """UPDATE ... WHERE status='PENDING'：只有一个调用者能看到 rowcount=1"""
        stmt = (
            update(PaymentIntentModel)
            .where(
                PaymentIntentModel.id == intent.id,
                PaymentIntentModel.status == PaymentStatus.PENDING.value,
            )
            .values(
                status=PaymentStatus.PAID.value,
                amount=intent.amount,
                fee_amount=intent.fee_amount,
                channel=intent.channel,
                paid_at=intent.paid_at,
                provider_payload=intent.provider_payload,
                updated_at=intent.updated_at or datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session="fetch")
        )
        try:
            async with self.session.begin_nested():
                result = await self.session.execute(stmt)
        except IntegrityError:
            # 部分唯一索引：同一订单已有其他 PAID 意向
            logger.warning("payment_mark_paid_conflict", payment_id=intent.id, order_id=intent.order_id)
            return False
        won = result.rowcount == 1
        if won:
            logger.info(
                "payment_intent_paid",
                payment_id=intent.id,
                order_id=intent.order_id,
                reference=intent.reference,
                amount=str(intent.amount),
                fee=str(intent.fee_amount),
            )
        return won

    async def update(self, intent: PaymentIntent) -> PaymentIntent:
        result = await self.session.execute(
            select(PaymentIntentModel).where(PaymentIntentModel.id == intent.id)
        )
        db_intent = result.scalar_one_or_none()
        if db_intent is None:
            raise PaymentIntentNotFoundException(payment_id=intent.id)
        self._apply(db_intent, intent)
        await self.session.flush()
        await self.session.refresh(db_intent)
        return self._to_entity(db_intent)

    async def cancel_pending_for_order(self, order_id: int, *, exclude_id: Optional[int] = None) -> int:
        stmt = update(PaymentIntentModel).where(
            PaymentIntentModel.order_id == order_id,
            PaymentIntentModel.status == PaymentStatus.PENDING.value,
        )
        if exclude_id is not None:
            stmt = stmt.where(PaymentIntentModel.id != exclude_id)
        stmt = stmt.values(
            status=PaymentStatus.CANCELED.value,
            updated_at=datetime.now(timezone.utc),
        ).execution_options(synchronize_session="fetch")
        result = await self.session.execute(stmt)
        if result.rowcount:
            logger.info("payment_siblings_canceled", order_id=order_id, count=result.rowcount, kept=exclude_id)
        return result.rowcount or 0

    async def cancel_pending_created_before(self, cutoff: datetime) -> int:
        stmt = (
            update(PaymentIntentModel)
            .where(
                PaymentIntentModel.status == PaymentStatus.PENDING.value,
                PaymentIntentModel.created_at < cutoff,
            )
            .values(status=PaymentStatus.CANCELED.value, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session="fetch")
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def receipt_no_exists(self, receipt_no: str) -> bool:
        result = await self.session.execute(
            select(func.count(PaymentIntentModel.id)).where(PaymentIntentModel.receipt_no == receipt_no)
        )
        return (result.scalar() or 0) > 0


class SQLAlchemyFinalizationEventRepository(FinalizationEventRepository):
    """结算事件仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: FinalizationEventModel) -> FinalizationEvent:
        return FinalizationEvent(
            id=model.id,
            payment_id=model.payment_id,
            event_type=FinalizationEventType(model.event_type),
            data=dict(model.data or {}),
            created_at=model.created_at,
        )

    async def exists(self, payment_id: int, event_type: FinalizationEventType) -> bool:
        result = await self.session.execute(
            select(func.count(FinalizationEventModel.id)).where(
                FinalizationEventModel.payment_id == payment_id,
                FinalizationEventModel.event_type == event_type.value,
            )
        )
        return (result.scalar() or 0) > 0

    async def add(self, event: FinalizationEvent) -> FinalizationEvent:
        db_event = FinalizationEventModel(
            payment_id=event.payment_id,
            event_type=event.event_type.value,
            data=event.data,
            created_at=event.created_at or datetime.now(timezone.utc),
        )
        try:
            async with self.session.begin_nested():
                self.session.add(db_event)
                await self.session.flush()
        except IntegrityError:
            raise DuplicateFinalizationEvent(event.payment_id, event.event_type)
        logger.info(
            "finalization_event_recorded",
            payment_id=event.payment_id,
            event_type=event.event_type.value,
        )
        return self._to_entity(db_event)

    async def list_for_payment(self, payment_id: int) -> List[FinalizationEvent]:
        result = await self.session.execute(
            select(FinalizationEventModel)
            .where(FinalizationEventModel.payment_id == payment_id)
            .order_by(FinalizationEventModel.id)
        )
        return [self._to_entity(m) for m in result.scalars().all()]

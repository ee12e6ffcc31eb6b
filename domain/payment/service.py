"""
支付意向领域服务 - 创建/复用意向与原子化的已支付迁移
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, List, Optional

from .entity import PaymentIntent, PaymentStatus, PaymentChannel
from .repository import PaymentIntentRepository
from .events import PaymentIntentCreated, PaymentMarkedPaid, PaymentFailed, PaymentCanceled
from domain.common.exceptions import (
    DomainValidationException,
    OrderNotFoundException,
    PaymentConflictException,
    PaymentIntentNotFoundException,
)
from domain.order.repository import OrderRepository
from domain.settlement.references import (
    DEFAULT_MAX_ATTEMPTS,
    generate_payment_reference,
    mint_with_retry,
)


@dataclass
class IntentCreation:
    intent: PaymentIntent
    resumed: bool


@dataclass
class MarkPaidResult:
    intent: PaymentIntent
    transitioned: bool
    # 未迁移时的原因：already_paid / inactive_intent / order_already_paid / lost_race
    reason: Optional[str] = None


class PaymentIntentDomainService:
    """
    支付意向领域服务

    职责：
    1. 创建意向时的业务校验（订单存在、金额为正、未支付）
    2. 有效期内的 PENDING 意向复用，过期的取消
    3. PENDING → PAID 的比较并设置迁移，同事务取消兄弟意向
    4. 产生领域事件
    """

    def __init__(
        self,
        intents: PaymentIntentRepository,
        orders: OrderRepository,
        *,
        reference_generator: Callable[[], str] = generate_payment_reference,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self.intents = intents
        self.orders = orders
        self._generate = reference_generator
        self._max_attempts = max_attempts
        self.events: List = []  # 领域事件收集

    async def create_intent(
        self,
        order_id: Optional[int],
        channel: str = PaymentChannel.PAYSTACK.value,
        *,
        ttl_minutes: int = 60,
        now: Optional[datetime] = None,
    ) -> IntentCreation:
        """
        创建或复用支付意向

        业务规则：
        1. 订单必须存在且总额大于0
        2. 订单已有 PAID 意向时拒绝
        3. 同渠道、未过期的 PENDING 意向直接复用；过期的取消后新建
        """
        if not order_id:
            raise DomainValidationException("订单ID不能为空", field="order_id")
        order = await self.orders.get_by_id(order_id)
        if order is None:
            raise OrderNotFoundException(order_id)
        if order.total is None or order.total <= 0:
            raise DomainValidationException(f"订单金额必须大于0: {order.total}", field="total")

        paid = await self.intents.get_paid_for_order(order_id)
        if paid is not None:
            raise PaymentConflictException(order_id, paid.reference)

        now = now or datetime.now(timezone.utc)
        pending = await self.intents.list_for_order(order_id, status=PaymentStatus.PENDING, channel=channel)
        for intent in pending:
            if intent.is_fresh(ttl_minutes, now):
                return IntentCreation(intent=intent, resumed=True)
        for intent in pending:
            intent.cancel()
            await self.intents.update(intent)
            self.events.append(PaymentCanceled(
                order_id=order_id, reference=intent.reference, payment_id=intent.id, reason="expired"
            ))

        async def create(reference: str) -> PaymentIntent:
            return await self.intents.add(PaymentIntent(
                id=None,
                order_id=order_id,
                reference=reference,
                amount=Decimal(order.total),
                status=PaymentStatus.PENDING,
                channel=channel,
                created_at=now,
                updated_at=now,
            ))

        created = await mint_with_retry(create, self._generate, max_attempts=self._max_attempts, kind="payment_reference")
        self.events.append(PaymentIntentCreated(
            order_id=order_id, reference=created.reference, payment_id=created.id, channel=channel
        ))
        return IntentCreation(intent=created, resumed=False)

    async def mark_paid(
        self,
        reference: str,
        amount: Decimal,
        fee: Decimal,
        paid_at: Optional[datetime] = None,
        *,
        channel: Optional[str] = None,
        payload: Optional[dict] = None,
    ) -> MarkPaidResult:
        """
        标记支付成功（幂等）

        业务规则：
        1. 金额必须大于0，引用必须存在
        2. 已 PAID 直接返回，不产生写入
        3. FAILED/CANCELED 或订单已有其他 PAID 意向时不迁移
        4. 仅比较并设置成功的调用者得到 transitioned=True，并在同一事务取消兄弟意向
        """
        if amount is None or Decimal(amount) <= 0:
            raise DomainValidationException(f"支付金额必须大于0: {amount}", field="amount")
        intent = await self.intents.get_by_reference(reference)
        if intent is None:
            raise PaymentIntentNotFoundException(reference=reference)

        if intent.status == PaymentStatus.PAID:
            return MarkPaidResult(intent=intent, transitioned=False, reason="already_paid")
        if intent.status in (PaymentStatus.FAILED, PaymentStatus.CANCELED):
            return MarkPaidResult(intent=intent, transitioned=False, reason="inactive_intent")
        sibling = await self.intents.get_paid_for_order(intent.order_id)
        if sibling is not None and sibling.id != intent.id:
            return MarkPaidResult(intent=intent, transitioned=False, reason="order_already_paid")

        intent.mark_paid(Decimal(amount), Decimal(fee or 0), paid_at, channel=channel, payload=payload)
        if not await self.intents.compare_and_set_paid(intent):
            current = await self.intents.get_by_id(intent.id)
            return MarkPaidResult(intent=current or intent, transitioned=False, reason="lost_race")

        canceled = await self.intents.cancel_pending_for_order(intent.order_id, exclude_id=intent.id)
        self.events.append(PaymentMarkedPaid(
            order_id=intent.order_id,
            reference=intent.reference,
            payment_id=intent.id,
            amount=str(intent.amount),
            fee=str(intent.fee_amount),
            canceled_siblings=canceled,
        ))
        return MarkPaidResult(intent=intent, transitioned=True)

    async def mark_failed(self, reference: str, payload: Optional[dict] = None) -> PaymentIntent:
        """PENDING → FAILED；其他状态原样返回"""
        intent = await self.intents.get_by_reference(reference)
        if intent is None:
            raise PaymentIntentNotFoundException(reference=reference)
        if intent.status != PaymentStatus.PENDING:
            return intent
        intent.mark_failed(payload)
        updated = await self.intents.update(intent)
        self.events.append(PaymentFailed(order_id=intent.order_id, reference=intent.reference, payment_id=intent.id))
        return updated

    async def expire_stale(self, ttl_minutes: int, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        return await self.intents.cancel_pending_created_before(now - timedelta(minutes=ttl_minutes))

    def clear_events(self) -> List:
        """清空并返回领域事件"""
        events = self.events.copy()
        self.events.clear()
        return events

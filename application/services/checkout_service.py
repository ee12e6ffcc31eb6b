"""
Checkout initialisation: create or resume a payment intent and hand the
customer a way to pay (hosted checkout, sandbox marker or bank details).
"""
from __future__ import annotations

from typing import Callable, Optional
from urllib.parse import urlencode

from application.dtos.payments import CreateSplit, InitializeCharge, SplitShare
from application.dtos.settlement import BankTransferInstructions, CheckoutResult, PaymentStatusDTO
from application.ports.payment_gateway import PaymentGateway
from application.ports.settlement_lock import SettlementLock
from core.logging_config import get_logger
from core.settings import PaymentSettings, payment_settings
from domain.common.exceptions import (
    DomainValidationException,
    OrderNotFoundException,
    PaymentIntentNotFoundException,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.entity import Order
from domain.payment.entity import FinalizationEvent, FinalizationEventType, PaymentChannel, PaymentIntent
from domain.payment.service import PaymentIntentDomainService
from domain.settlement.fees import SplitPlan, build_split_plan, group_lines_by_supplier
from infrastructure.external.payments.exceptions import PaymentProviderError


logger = get_logger(__name__)


class CheckoutService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        *,
        gateway: Optional[PaymentGateway],
        lock: SettlementLock,
        settings: Optional[PaymentSettings] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._gateway = gateway
        self._lock = lock
        self._settings = settings or payment_settings

    async def init_checkout(
        self,
        order_id: int,
        channel: str = PaymentChannel.PAYSTACK.value,
        customer_email: Optional[str] = None,
    ) -> CheckoutResult:
        """
        发起支付

        规则：
        1. 有效期内的同渠道 PENDING 意向直接复用（返回已存的收银台链接）
        2. 沙箱模式不调用网关
        3. 线下转账返回收款账户信息
        4. 网关渠道按供应商计算分账方案，仅在开启分账时提交网关
        """
        cfg = self._settings.settlement
        async with self._lock.hold(order_id):
            async with self._uow_factory() as uow:
                service = PaymentIntentDomainService(
                    uow.payment_intents,
                    uow.orders,
                    max_attempts=cfg.reference_max_attempts,
                )
                creation = await service.create_intent(order_id, channel, ttl_minutes=cfg.pending_ttl_minutes)
                intent = creation.intent
                for event in service.clear_events():
                    logger.info(
                        "payment_domain_event",
                        event_type=type(event).__name__,
                        payment_id=event.payment_id,
                        reference=event.reference,
                    )

                if creation.resumed and intent.authorization_url:
                    logger.info("checkout_resumed", order_id=order_id, reference=intent.reference)
                    return self._result(
                        intent,
                        resumed=True,
                        authorization_url=intent.authorization_url,
                        split_applied=bool(intent.init_payload.get("split_applied")),
                    )

                if cfg.sandbox_mode:
                    intent.attach_checkout({"sandbox": True, "channel": channel})
                    await uow.payment_intents.update(intent)
                    logger.info("checkout_sandbox", order_id=order_id, reference=intent.reference)
                    return self._result(intent, resumed=creation.resumed, sandbox=True)

                if channel == PaymentChannel.BANK_TRANSFER.value:
                    instructions = BankTransferInstructions(
                        bank_name=cfg.bank_name,
                        account_name=cfg.bank_account_name,
                        account_number=cfg.bank_account_number,
                        amount=intent.amount,
                        reference=intent.reference,
                    )
                    intent.attach_checkout({"bank_transfer": instructions.model_dump()})
                    await uow.payment_intents.update(intent)
                    return self._result(intent, resumed=creation.resumed, bank_transfer=instructions)

                if self._gateway is None:
                    raise PaymentProviderError("payment gateway not configured", provider="paystack")

                order = await uow.orders.get_by_id(order_id)
                if order is None:
                    raise OrderNotFoundException(order_id)
                email = customer_email or order.customer_email
                if not email:
                    raise DomainValidationException("付款邮箱不能为空", field="email")

                plan = await self._split_plan(uow, order)
                split_code = None
                if plan is not None and cfg.split_enabled:
                    split = await self._gateway.create_split(CreateSplit(
                        name=f"order-{order_id}-{intent.reference}",
                        currency=cfg.currency,
                        shares=[SplitShare(subaccount=p.subaccount, share=p.share_minor) for p in plan.parts],
                        bearer_type=self._settings.paystack.split_bearer_type,
                    ))
                    split_code = split.split_code
                elif plan is not None:
                    logger.info(
                        "split_plan_withheld",
                        order_id=order_id,
                        reference=intent.reference,
                        parts=plan.as_metadata(),
                    )

                callback_url = self._callback_url(order_id, intent.reference)
                session = await self._gateway.initialize_charge(InitializeCharge(
                    reference=intent.reference,
                    amount=intent.amount,
                    email=email,
                    currency=cfg.currency,
                    callback_url=callback_url,
                    split_code=split_code,
                    metadata={"order_id": order_id, "payment_id": intent.id},
                ))

                split_applied = split_code is not None
                intent.attach_checkout(
                    {
                        "authorization_url": session.authorization_url,
                        "access_code": session.access_code,
                        "callback_url": callback_url,
                        "email": email,
                        "split_applied": split_applied,
                        "split_code": split_code,
                        "split_plan": plan.as_metadata() if plan is not None else None,
                    },
                    provider_payload=session.raw,
                )
                await uow.payment_intents.update(intent)
                if split_applied:
                    await uow.finalization_events.add(FinalizationEvent(
                        id=None,
                        payment_id=intent.id,
                        event_type=FinalizationEventType.SPLIT_USED,
                        data={"split_code": split_code, "parts": plan.as_metadata()},
                    ))

        logger.info(
            "checkout_initialized",
            order_id=order_id,
            reference=intent.reference,
            amount=str(intent.amount),
            split_applied=split_applied,
        )
        return self._result(
            intent,
            resumed=creation.resumed,
            authorization_url=session.authorization_url,
            split_applied=split_applied,
        )

    async def get_status(self, order_id: int, reference: Optional[str] = None) -> PaymentStatusDTO:
        """按引用查询；未给引用时返回订单最近一次支付意向"""
        async with self._uow_factory(readonly=True) as uow:
            if reference:
                intent = await uow.payment_intents.get_by_reference(reference)
            else:
                intents = await uow.payment_intents.list_for_order(order_id)
                intent = intents[0] if intents else None
        if intent is None or intent.order_id != order_id:
            raise PaymentIntentNotFoundException(reference=reference)
        return PaymentStatusDTO(
            payment_id=intent.id,
            order_id=intent.order_id,
            reference=intent.reference,
            status=intent.status.value,
            channel=intent.channel,
            amount=intent.amount,
            fee_amount=intent.fee_amount,
            paid_at=intent.paid_at,
            receipt_no=intent.receipt_no,
            authorization_url=intent.authorization_url,
            breakdown=intent.breakdown,
        )

    async def expire_pending(self) -> int:
        """取消超过有效期仍未支付的意向（定时任务）"""
        ttl = self._settings.settlement.pending_ttl_minutes
        async with self._uow_factory() as uow:
            service = PaymentIntentDomainService(uow.payment_intents, uow.orders)
            canceled = await service.expire_stale(ttl)
        if canceled:
            logger.info("payment_intents_expired", canceled=canceled, ttl_minutes=ttl)
        return canceled

    async def _split_plan(self, uow: AbstractUnitOfWork, order: Order) -> Optional[SplitPlan]:
        shares = group_lines_by_supplier(order.items)
        suppliers = await uow.suppliers.get_many(s.supplier_id for s in shares)
        subaccounts = {
            sid: supplier.payout_subaccount_code
            for sid, supplier in suppliers.items()
            if supplier.is_active
        }
        return build_split_plan(shares, subaccounts)

    def _callback_url(self, order_id: int, reference: str) -> str:
        base = self._settings.paystack.callback_base_url.rstrip("/")
        query = urlencode({"orderId": order_id, "reference": reference, "gateway": "paystack"})
        return f"{base}/payment-callback?{query}"

    @staticmethod
    def _result(intent: PaymentIntent, **kwargs) -> CheckoutResult:
        return CheckoutResult(
            order_id=intent.order_id,
            payment_id=intent.id,
            reference=intent.reference,
            channel=intent.channel,
            amount=intent.amount,
            status=intent.status.value,
            **kwargs,
        )

"""
Payment verification: pull (client callback / admin re-verify) and push
(signed gateway webhook) converge on the same idempotent mark-paid path.

Gateway failures never change an intent; the caller sees PENDING and retries.
"""
from __future__ import annotations

import hashlib
import json
from datetime import datetime
from decimal import Decimal
from typing import Callable, Mapping, Optional

from application.dtos.settlement import VerificationResult, WebhookOutcome
from application.ports.idempotency import DeliveryCache
from application.ports.payment_gateway import PaymentGateway
from application.ports.settings_provider import SettlementSettingsProvider
from application.ports.settlement_lock import SettlementLock
from application.ports.task_dispatcher import TaskDispatcher
from application.services.finalization_service import FinalizationService
from core.logging_config import bind_settlement_context, get_logger
from core.settings import PaymentSettings, payment_settings
from domain.common.exceptions import PaymentIntentNotFoundException, ReferenceMismatchException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.entity import ActivityKind, OrderActivity
from domain.payment.entity import PaymentChannel, PaymentIntent, PaymentStatus
from domain.payment.service import PaymentIntentDomainService
from domain.settlement.fees import ZERO, estimate_gateway_fee, from_minor
from infrastructure.external.payments.exceptions import GatewayError, PaymentSignatureError


logger = get_logger(__name__)

FINALIZE_TASK = "settlement.finalize"
FINALIZE_RETRY_COUNTDOWN = 30

SIGNATURE_HEADER = "x-paystack-signature"
CHARGE_SUCCESS = "charge.success"
CARD_CHANNELS = frozenset({"card", "bank"})
BANK_TRANSFER_CHANNELS = frozenset({"bank_transfer", "dedicated_nuban"})


def _parse_paid_at(value) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class VerificationService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        *,
        gateway: Optional[PaymentGateway],
        finalizer: FinalizationService,
        lock: SettlementLock,
        dispatcher: TaskDispatcher,
        settings_provider: SettlementSettingsProvider,
        delivery_cache: Optional[DeliveryCache] = None,
        settings: Optional[PaymentSettings] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._gateway = gateway
        self._finalizer = finalizer
        self._lock = lock
        self._dispatcher = dispatcher
        self._settings_provider = settings_provider
        self._delivery_cache = delivery_cache
        self._settings = settings or payment_settings

    # ============= 主动查询 =============

    async def verify_by_reference(self, reference: str, order_id: Optional[int] = None) -> VerificationResult:
        """
        按支付引用校验支付结果

        规则：
        1. 引用不存在或与订单不符 → 404
        2. 已 PAID → 直接返回，但仍重新触发 finalize 以补齐未完成的副作用
        3. FAILED/CANCELED → 原样返回
        4. 沙箱或非网关渠道 → 人工审批时保持 PENDING，否则按意向金额直接入账
        5. 网关查询出错或结算过程内部出错 → PENDING，意向不变
        """
        async with self._uow_factory(readonly=True) as uow:
            intent = await uow.payment_intents.get_by_reference(reference)
        if intent is None or (order_id is not None and intent.order_id != order_id):
            raise PaymentIntentNotFoundException(reference=reference)
        bind_settlement_context(order_id=intent.order_id, payment_id=intent.id, reference=reference)

        if intent.status == PaymentStatus.PAID:
            await self._finalize_safely(intent.id)
            return self._result(intent, "PAID", "already verified")
        if intent.status in (PaymentStatus.FAILED, PaymentStatus.CANCELED):
            return self._result(intent, intent.status.value, f"payment {intent.status.value.lower()}")

        try:
            return await self._verify_pending(intent)
        except ReferenceMismatchException:
            raise
        except Exception:
            # 锁超时或写库失败等内部错误：意向保持 PENDING，由下一次查询或 webhook 收敛
            logger.exception("verify_internal_error", reference=reference)
            return self._result(intent, "PENDING", "verification pending")

    async def _verify_pending(self, intent: PaymentIntent) -> VerificationResult:
        reference = intent.reference
        cfg = self._settings.settlement
        if cfg.sandbox_mode or intent.channel != PaymentChannel.PAYSTACK.value:
            return await self._verify_offline(intent)

        if self._gateway is None:
            logger.warning("verify_gateway_not_configured", reference=reference)
            return self._result(intent, "PENDING", "payment gateway not configured")

        try:
            verification = await self._gateway.verify_transaction(reference)
        except GatewayError as exc:
            logger.warning(
                "verify_gateway_error",
                reference=reference,
                error_type=exc.error_type,
                error=exc.message,
            )
            return self._result(intent, "PENDING", "verification pending")

        if verification.reference != intent.reference:
            async with self._lock.hold(intent.order_id):
                async with self._uow_factory() as uow:
                    await uow.order_activities.add(OrderActivity(
                        id=None,
                        order_id=intent.order_id,
                        kind=ActivityKind.VERIFY_MISMATCH.value,
                        message="Gateway reference does not match",
                        meta={"expected": intent.reference, "received": verification.reference},
                    ))
            logger.warning(
                "verify_reference_mismatch",
                expected=intent.reference,
                received=verification.reference,
            )
            raise ReferenceMismatchException(intent.reference, verification.reference)

        if verification.status == "success":
            international = self._is_international(verification.card_country, verification.currency)
            fee = verification.fees if verification.fees is not None else await self._estimate_fee(
                verification.amount, international
            )
            return await self._settle(
                intent,
                amount=verification.amount,
                fee=fee,
                paid_at=verification.paid_at,
                channel=verification.channel,
                payload=verification.raw,
            )

        if verification.status == "failed":
            await self._fail(intent, verification.provider_status, verification.raw)
            return self._result(intent, "FAILED", verification.provider_status or "payment failed")

        return self._result(intent, "PENDING", verification.provider_status or "verification pending")

    async def _verify_offline(self, intent: PaymentIntent) -> VerificationResult:
        cfg = self._settings.settlement
        if cfg.inline_approval == "manual":
            async with self._lock.hold(intent.order_id):
                async with self._uow_factory() as uow:
                    await uow.order_activities.add(OrderActivity(
                        id=None,
                        order_id=intent.order_id,
                        kind=ActivityKind.AWAITING_APPROVAL.value,
                        message=f"Payment {intent.reference} awaiting approval",
                        meta={"payment_id": intent.id, "channel": intent.channel, "sandbox": cfg.sandbox_mode},
                    ))
            logger.info("verify_awaiting_approval", reference=intent.reference, channel=intent.channel)
            return self._result(intent, "PENDING", "awaiting approval")

        if intent.channel == PaymentChannel.BANK_TRANSFER.value:
            fee = ZERO
        else:
            fee = await self._estimate_fee(intent.amount, international=False)
        return await self._settle(
            intent,
            amount=intent.amount,
            fee=fee,
            payload={"sandbox": cfg.sandbox_mode, "approval": "auto"},
        )

    # ============= Webhook =============

    async def handle_webhook(self, headers: Mapping[str, str], raw_body: bytes) -> WebhookOutcome:
        """签名校验通过前不做任何读写；之后的一切异常只记日志，由 HTTP 层统一 200 应答"""
        signature = self._header(headers, SIGNATURE_HEADER)
        if self._gateway is None or not self._gateway.verify_signature(raw_body, signature):
            logger.warning("webhook_signature_invalid", provider="paystack", has_signature=bool(signature))
            raise PaymentSignatureError("Invalid webhook signature", provider="paystack")

        try:
            payload = json.loads(raw_body or b"{}")
        except ValueError:
            logger.warning("webhook_malformed_body", provider="paystack")
            return WebhookOutcome(processed=False, reason="malformed")
        if not isinstance(payload, dict):
            return WebhookOutcome(processed=False, reason="malformed")

        event = payload.get("event")
        data = payload.get("data") or {}
        reference = data.get("reference")

        key = f"webhook:paystack:{event}:{hashlib.sha256(raw_body).hexdigest()}"
        if self._delivery_cache is not None and await self._delivery_cache.seen(key):
            logger.info("webhook_duplicate_ignored", webhook_event=event, reference=reference)
            return WebhookOutcome(processed=False, reason="duplicate", reference=reference, webhook_event=event)

        outcome = await self._process_event(event, data)
        if self._delivery_cache is not None:
            await self._delivery_cache.remember(key, self._settings.webhook.tolerance_seconds)
        logger.info(
            "webhook_processed",
            webhook_event=event,
            reference=reference,
            processed=outcome.processed,
            reason=outcome.reason,
        )
        return outcome

    async def _process_event(self, event: Optional[str], data: dict) -> WebhookOutcome:
        reference = data.get("reference")
        channel = (data.get("channel") or "").lower()
        hooks = self._settings.webhook

        if channel in CARD_CHANNELS and not hooks.accept_card:
            return WebhookOutcome(processed=False, reason="channel_disabled", reference=reference, webhook_event=event)
        if channel in BANK_TRANSFER_CHANNELS and not hooks.accept_bank_transfer:
            return WebhookOutcome(processed=False, reason="channel_disabled", reference=reference, webhook_event=event)
        if event != CHARGE_SUCCESS:
            return WebhookOutcome(processed=False, reason="ignored_event", reference=reference, webhook_event=event)
        if not reference:
            return WebhookOutcome(processed=False, reason="missing_reference", webhook_event=event)

        async with self._uow_factory(readonly=True) as uow:
            intent = await uow.payment_intents.get_by_reference(reference)
        if intent is None:
            logger.warning("webhook_unknown_reference", reference=reference, webhook_event=event)
            return WebhookOutcome(processed=False, reason="unknown_reference", reference=reference, webhook_event=event)

        amount = from_minor(data.get("amount") or 0)
        authorization = data.get("authorization") or {}
        international = self._is_international(authorization.get("country_code"), data.get("currency"))
        if data.get("fees") is not None:
            fee = from_minor(data["fees"])
        else:
            fee = await self._estimate_fee(amount, international)

        result = await self._settle(
            intent,
            amount=amount,
            fee=fee,
            paid_at=_parse_paid_at(data.get("paid_at") or data.get("paidAt")),
            channel=channel or None,
            payload={"event": event, "data": data},
        )
        return WebhookOutcome(
            processed=result.status == "PAID",
            reason=result.message,
            reference=reference,
            webhook_event=event,
        )

    # ============= 入账 =============

    async def _settle(
        self,
        intent: PaymentIntent,
        *,
        amount: Decimal,
        fee: Decimal,
        paid_at: Optional[datetime] = None,
        channel: Optional[str] = None,
        payload: Optional[dict] = None,
    ) -> VerificationResult:
        async with self._lock.hold(intent.order_id):
            async with self._uow_factory() as uow:
                service = PaymentIntentDomainService(uow.payment_intents, uow.orders)
                outcome = await service.mark_paid(
                    intent.reference,
                    amount,
                    fee,
                    paid_at,
                    channel=channel,
                    payload=payload,
                )
                events = service.clear_events()

        current = outcome.intent
        if outcome.reason == "inactive_intent":
            logger.error(
                "payment_paid_on_inactive_intent",
                reference=current.reference,
                order_id=current.order_id,
                status=current.status.value,
                amount=str(amount),
            )
            return self._result(current, current.status.value, "payment received on inactive intent")
        if outcome.reason == "order_already_paid":
            logger.error(
                "payment_paid_on_paid_order",
                reference=current.reference,
                order_id=current.order_id,
                amount=str(amount),
            )
            return self._result(current, current.status.value, "order already paid by another payment")
        if current.status != PaymentStatus.PAID:
            logger.warning("payment_mark_paid_lost", reference=current.reference, status=current.status.value)
            return self._result(current, current.status.value, f"payment {current.status.value.lower()}")

        for event in events:
            logger.info(
                "payment_domain_event",
                event_type=type(event).__name__,
                event_id=event.event_id,
                payment_id=event.payment_id,
                reference=event.reference,
            )
        if outcome.transitioned:
            logger.info(
                "payment_marked_paid",
                reference=current.reference,
                order_id=current.order_id,
                amount=str(current.amount),
                fee=str(current.fee_amount),
            )
        await self._finalize_safely(current.id)
        message = "payment verified" if outcome.transitioned else "already verified"
        return self._result(current, "PAID", message)

    async def _fail(self, intent: PaymentIntent, provider_status: Optional[str], raw: dict) -> None:
        async with self._lock.hold(intent.order_id):
            async with self._uow_factory() as uow:
                service = PaymentIntentDomainService(uow.payment_intents, uow.orders)
                failed = await service.mark_failed(intent.reference, payload=raw)
                if failed.status == PaymentStatus.FAILED:
                    await uow.order_activities.add(OrderActivity(
                        id=None,
                        order_id=intent.order_id,
                        kind=ActivityKind.VERIFY_FAILED.value,
                        message=f"Payment {intent.reference} failed",
                        meta={"payment_id": intent.id, "provider_status": provider_status},
                    ))
        intent.status = failed.status
        logger.info("payment_failed", reference=intent.reference, provider_status=provider_status)

    async def _finalize_safely(self, payment_id: int) -> None:
        """finalize 失败时交给后台任务重试，入账结果不受影响"""
        try:
            await self._finalizer.finalize(payment_id)
        except Exception as exc:
            logger.exception("finalize_after_verify_failed", payment_id=payment_id, error=str(exc))
            try:
                self._dispatcher.dispatch(FINALIZE_TASK, args=[payment_id], countdown=FINALIZE_RETRY_COUNTDOWN)
            except Exception as enqueue_exc:
                logger.error("finalize_enqueue_failed", payment_id=payment_id, error=str(enqueue_exc))

    # ============= helpers =============

    async def _estimate_fee(self, amount: Decimal, international: bool) -> Decimal:
        snapshot = await self._settings_provider.get()
        return estimate_gateway_fee(amount, snapshot.fee_schedule, international=international)

    def _is_international(self, country: Optional[str], currency: Optional[str]) -> bool:
        cfg = self._settings.settlement
        if country and country.upper() != cfg.local_country.upper():
            return True
        return bool(currency) and currency.upper() != cfg.currency.upper()

    @staticmethod
    def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
        for key, value in headers.items():
            if key.lower() == name:
                return value
        return None

    @staticmethod
    def _result(intent: PaymentIntent, status: str, message: str) -> VerificationResult:
        return VerificationResult(
            status=status,
            reference=intent.reference,
            message=message,
            payment_id=intent.id,
            order_id=intent.order_id,
        )

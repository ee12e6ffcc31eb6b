"""
Finalization orchestrator: turns a PAID payment into its financial facts once.

Two phases, both serialised per order by the settlement lock:

1. An atomic core guarded by the ``FINALIZE_PAID`` event (order status,
   service-fee slice, purchase-order fan-out and supplier allocation).
2. Post-commit effects, each guarded by its own FinalizationEvent and run in
   its own transaction. An effect that fails, or reports itself incomplete,
   leaves its event unwritten so the next ``finalize`` call retries it.
"""
from __future__ import annotations

from typing import Awaitable, Callable, Optional

from application.dtos.settlement import FinalizationReport
from application.ports.settlement_lock import SettlementLock
from application.ports.task_dispatcher import TaskDispatcher
from application.services.notification_service import NotificationService
from application.services.payout_service import PayoutService
from application.services.profit_service import ProfitService
from application.services.receipt_service import ReceiptService
from core.logging_config import bind_settlement_context, get_logger
from core.settings import PaymentSettings, payment_settings
from domain.common.exceptions import OrderNotFoundException, PaymentIntentNotFoundException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.entity import ActivityKind, Order, OrderActivity
from domain.payment.entity import (
    FinalizationEvent,
    FinalizationEventType,
    PaymentIntent,
    PaymentStatus,
)
from domain.payment.repository import DuplicateFinalizationEvent
from domain.settlement.allocation import SupplierAllocationService
from domain.settlement.fanout import PurchaseOrderFanoutService
from domain.settlement.fees import service_fee_slice


logger = get_logger(__name__)

FAN_OUT_TASK = "settlement.fan_out"

EffectHandler = Callable[[AbstractUnitOfWork], Awaitable[Optional[dict]]]


class FinalizationService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        *,
        lock: SettlementLock,
        dispatcher: TaskDispatcher,
        payouts: PayoutService,
        receipts: ReceiptService,
        profits: ProfitService,
        notifications: NotificationService,
        settings: Optional[PaymentSettings] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._lock = lock
        self._dispatcher = dispatcher
        self._payouts = payouts
        self._receipts = receipts
        self._profits = profits
        self._notifications = notifications
        self._settings = settings or payment_settings

    async def _load_paid(self, payment_id: int) -> Optional[PaymentIntent]:
        async with self._uow_factory(readonly=True) as uow:
            intent = await uow.payment_intents.get_by_id(payment_id)
        if intent is None or intent.status != PaymentStatus.PAID:
            logger.info(
                "finalize_skipped_not_paid",
                payment_id=payment_id,
                status=intent.status.value if intent else None,
            )
            return None
        return intent

    async def finalize(self, payment_id: int) -> FinalizationReport:
        report = FinalizationReport(payment_id=payment_id)
        intent = await self._load_paid(payment_id)
        if intent is None:
            return report
        bind_settlement_context(order_id=intent.order_id, payment_id=payment_id, reference=intent.reference)

        async with self._lock.hold(intent.order_id):
            report.core_executed = await self._run_core(payment_id)
            report.already_finalized = not report.core_executed
            await self._run_effects(report, intent)

        logger.info(
            "finalize_completed",
            payment_id=payment_id,
            order_id=intent.order_id,
            core_executed=report.core_executed,
            completed=report.completed,
            skipped=report.skipped,
            pending=report.pending,
            failed=report.failed,
        )
        return report

    async def fan_out_for_payment(self, payment_id: int) -> FinalizationReport:
        """延迟拆单任务入口：只补齐采购单与分配，随后由调用方再次 finalize"""
        report = FinalizationReport(payment_id=payment_id)
        intent = await self._load_paid(payment_id)
        if intent is None:
            return report
        async with self._lock.hold(intent.order_id):
            await self._run_effect(report, payment_id, FinalizationEventType.FANOUT_COMPLETED, self._inline_fan_out(payment_id))
        return report

    # ============= 核心事务 =============

    async def _run_core(self, payment_id: int) -> bool:
        cfg = self._settings.settlement
        try:
            async with self._uow_factory() as uow:
                if await uow.finalization_events.exists(payment_id, FinalizationEventType.FINALIZE_PAID):
                    return False

                intent = await uow.payment_intents.get_by_id(payment_id, for_update=True)
                if intent is None:
                    raise PaymentIntentNotFoundException(payment_id=payment_id)
                canceled = await uow.payment_intents.cancel_pending_for_order(intent.order_id, exclude_id=intent.id)

                order = await uow.orders.get_by_id(intent.order_id, for_update=True)
                if order is None:
                    raise OrderNotFoundException(intent.order_id)
                previous_status = order.status.value
                if order.advance_on_payment(cfg.skip_fulfillment_confirmation):
                    await uow.orders.update_status(order)

                fee_slice = service_fee_slice(order.service_fee, intent.amount, order.total)
                await uow.order_comms.upsert_fee_slice(order.id, intent.id, fee_slice)

                fanned_out = False
                if not cfg.defer_fanout and not await uow.finalization_events.exists(
                    payment_id, FinalizationEventType.FANOUT_COMPLETED
                ):
                    data = await self._fan_out_and_allocate(uow, intent, order)
                    await uow.finalization_events.add(FinalizationEvent(
                        id=None,
                        payment_id=payment_id,
                        event_type=FinalizationEventType.FANOUT_COMPLETED,
                        data=data,
                    ))
                    fanned_out = True

                await uow.finalization_events.add(FinalizationEvent(
                    id=None,
                    payment_id=payment_id,
                    event_type=FinalizationEventType.FINALIZE_PAID,
                    data={
                        "order_status": order.status.value,
                        "service_fee_slice": str(fee_slice),
                        "fanned_out": fanned_out,
                    },
                ))
                await uow.order_activities.add(OrderActivity(
                    id=None,
                    order_id=order.id,
                    kind=ActivityKind.FINALIZE_PAID.value,
                    message=f"Payment {intent.reference} finalized",
                    meta={"payment_id": intent.id, "reference": intent.reference, "amount": str(intent.amount)},
                ))
        except DuplicateFinalizationEvent:
            logger.info("finalize_core_duplicate", payment_id=payment_id)
            return False

        logger.info(
            "finalize_core_committed",
            payment_id=payment_id,
            order_id=order.id,
            order_status=order.status.value,
            previous_status=previous_status,
            canceled_siblings=canceled,
            service_fee_slice=str(fee_slice),
            fanned_out=fanned_out,
        )
        return True

    async def _fan_out_and_allocate(self, uow: AbstractUnitOfWork, intent: PaymentIntent, order: Order) -> dict:
        fanout = PurchaseOrderFanoutService(
            uow.purchase_orders,
            uow.order_activities,
            max_attempts=self._settings.settlement.reference_max_attempts,
        )
        purchase_orders = await fanout.fan_out(order)
        breakdown = await SupplierAllocationService(uow.allocations, uow.purchase_orders).allocate(
            intent, purchase_orders
        )
        intent.breakdown = breakdown
        await uow.payment_intents.update(intent)
        logger.info(
            "fanout_completed",
            payment_id=intent.id,
            order_id=order.id,
            purchase_orders=[po.supplier_order_ref for po in purchase_orders],
        )
        return {"purchase_orders": len(purchase_orders), "suppliers": sorted(breakdown)}

    # ============= 提交后副作用 =============

    async def _run_effects(self, report: FinalizationReport, intent: PaymentIntent) -> None:
        pid, order_id = intent.id, intent.order_id
        fanout_event = FinalizationEventType.FANOUT_COMPLETED

        await self._run_effect(report, pid, fanout_event, self._fan_out_effect(pid))
        await self._run_effect(
            report, pid, FinalizationEventType.SUPPLIER_NOTIFIED,
            lambda uow: self._notifications.notify_suppliers(order_id, uow=uow),
            requires=fanout_event,
        )
        await self._run_effect(
            report, pid, FinalizationEventType.PAYOUTS_DISPATCHED, self._payout_effect(pid),
            requires=fanout_event,
        )
        await self._run_effect(report, pid, FinalizationEventType.RECEIPT_ISSUED, self._receipt_effect(pid))
        await self._run_effect(report, pid, FinalizationEventType.PROFIT_COMPUTED, self._profit_effect(pid))
        await self._run_effect(
            report, pid, FinalizationEventType.ORDER_PAID_EMAIL_SENT,
            lambda uow: self._notifications.notify_customer_paid(order_id, pid, uow=uow),
        )

    async def _run_effect(
        self,
        report: FinalizationReport,
        payment_id: int,
        event_type: FinalizationEventType,
        handler: EffectHandler,
        *,
        requires: Optional[FinalizationEventType] = None,
    ) -> None:
        name = event_type.value
        try:
            async with self._uow_factory() as uow:
                if await uow.finalization_events.exists(payment_id, event_type):
                    report.skipped.append(name)
                    return
                if requires is not None and not await uow.finalization_events.exists(payment_id, requires):
                    report.pending.append(name)
                    return
                data = await handler(uow)
                if data is None:
                    report.pending.append(name)
                    return
                await uow.finalization_events.add(FinalizationEvent(
                    id=None, payment_id=payment_id, event_type=event_type, data=data
                ))
        except DuplicateFinalizationEvent:
            report.skipped.append(name)
            return
        except Exception as exc:
            # 副作用失败不影响其余副作用，事件未写入，下次 finalize 重试
            logger.exception(
                "settlement_effect_failed",
                payment_id=payment_id,
                effect=name,
                error=str(exc),
            )
            report.failed.append(name)
            return
        report.completed.append(name)

    def _inline_fan_out(self, payment_id: int) -> EffectHandler:
        async def handler(uow: AbstractUnitOfWork) -> Optional[dict]:
            intent = await uow.payment_intents.get_by_id(payment_id, for_update=True)
            order = await uow.orders.get_by_id(intent.order_id, for_update=True)
            if order is None:
                raise OrderNotFoundException(intent.order_id)
            return await self._fan_out_and_allocate(uow, intent, order)
        return handler

    def _fan_out_effect(self, payment_id: int) -> EffectHandler:
        inline = self._inline_fan_out(payment_id)

        async def handler(uow: AbstractUnitOfWork) -> Optional[dict]:
            if self._settings.settlement.defer_fanout:
                self._dispatcher.dispatch(FAN_OUT_TASK, args=[payment_id])
                logger.info("fanout_deferred", payment_id=payment_id)
                return None
            return await inline(uow)
        return handler

    def _payout_effect(self, payment_id: int) -> EffectHandler:
        async def handler(uow: AbstractUnitOfWork) -> Optional[dict]:
            outcome = await self._payouts.dispatch_for_payment(payment_id, uow=uow)
            if not outcome.complete:
                logger.warning("payouts_incomplete", payment_id=payment_id, errors=outcome.errors)
                return None
            return outcome.model_dump()
        return handler

    def _receipt_effect(self, payment_id: int) -> EffectHandler:
        async def handler(uow: AbstractUnitOfWork) -> Optional[dict]:
            snapshot = await self._receipts.issue_receipt_once(payment_id, uow=uow)
            if snapshot is None:
                return None
            return {"receipt_no": snapshot.get("receipt_no")}
        return handler

    def _profit_effect(self, payment_id: int) -> EffectHandler:
        async def handler(uow: AbstractUnitOfWork) -> Optional[dict]:
            breakdown = await self._profits.compute_for_payment(payment_id, uow=uow)
            if breakdown is None:
                return None
            return {"profit": str(breakdown.profit), "mode": breakdown.mode.value}
        return handler

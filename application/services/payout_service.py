"""
Payout fallback: direct transfers to suppliers when the charge was not split.
"""
from __future__ import annotations

from typing import Callable, Optional

from application.dtos.payments import CreateRecipient, TransferRequest
from application.dtos.settlement import PayoutItem, PayoutOutcome
from application.ports.payment_gateway import PaymentGateway
from core.logging_config import get_logger
from core.settings import PaymentSettings, payment_settings
from domain.common.exceptions import PaymentIntentNotFoundException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.entity import ActivityKind, OrderActivity, Supplier
from domain.payment.entity import FinalizationEventType
from domain.settlement.entity import AllocationStatus, SupplierPaymentAllocation
from infrastructure.external.payments.exceptions import GatewayError


logger = get_logger(__name__)

SANDBOX_MODE = "SANDBOX_MODE"


class PayoutService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        *,
        gateway: Optional[PaymentGateway],
        settings: Optional[PaymentSettings] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._gateway = gateway
        self._settings = settings or payment_settings

    async def dispatch_for_payment(self, payment_id: int, *, uow: Optional[AbstractUnitOfWork] = None) -> PayoutOutcome:
        if uow is None:
            async with self._uow_factory() as own:
                return await self._dispatch(payment_id, own)
        return await self._dispatch(payment_id, uow)

    async def _dispatch(self, payment_id: int, uow: AbstractUnitOfWork) -> PayoutOutcome:
        cfg = self._settings.settlement
        if await uow.finalization_events.exists(payment_id, FinalizationEventType.SPLIT_USED):
            logger.info("payout_skipped_split", payment_id=payment_id)
            return PayoutOutcome(payment_id=payment_id, mode="split", complete=True, reason="split")

        intent = await uow.payment_intents.get_by_id(payment_id)
        if intent is None:
            raise PaymentIntentNotFoundException(payment_id=payment_id)

        if cfg.sandbox_mode:
            await uow.order_activities.add(OrderActivity(
                id=None,
                order_id=intent.order_id,
                kind=ActivityKind.TRANSFER_SKIPPED.value,
                message="Supplier transfers skipped in sandbox mode",
                meta={"payment_id": payment_id, "reason": SANDBOX_MODE},
            ))
            logger.info("payout_skipped_sandbox", payment_id=payment_id, order_id=intent.order_id)
            return PayoutOutcome(payment_id=payment_id, mode="sandbox", complete=True, reason=SANDBOX_MODE)

        allocations = [
            a for a in await uow.allocations.list_for_payment(payment_id)
            if a.status in (AllocationStatus.HELD, AllocationStatus.FAILED)
        ]
        suppliers = await uow.suppliers.get_many(a.supplier_id for a in allocations)
        outcome = PayoutOutcome(payment_id=payment_id, mode="transfer", complete=True)

        for allocation in allocations:
            po = await uow.purchase_orders.get_by_id(allocation.purchase_order_id)
            supplier = suppliers.get(allocation.supplier_id)
            if allocation.amount <= 0 or po is None:
                outcome.items.append(self._item(allocation, reason="nothing to transfer"))
                continue

            if self._gateway is None:
                outcome.errors.append(f"supplier {allocation.supplier_id}: payment gateway not configured")
                outcome.items.append(self._item(allocation, reason="gateway not configured"))
                continue

            try:
                recipient = await self._resolve_recipient(uow, supplier)
            except GatewayError as exc:
                await self._fail(uow, allocation, f"recipient: {exc.message}", outcome)
                continue
            if not recipient:
                logger.warning(
                    "payout_no_recipient",
                    payment_id=payment_id,
                    supplier_id=allocation.supplier_id,
                    allocation_id=allocation.id,
                )
                outcome.items.append(self._item(allocation, reason="no recipient"))
                continue

            transfer_reference = f"{intent.reference}-{po.supplier_order_ref}"
            try:
                result = await self._gateway.execute_transfer(TransferRequest(
                    amount=allocation.amount,
                    recipient_code=recipient,
                    reference=transfer_reference,
                    reason=f"Order {intent.order_id} / {po.supplier_order_ref}",
                    currency=cfg.currency,
                ))
            except GatewayError as exc:
                await self._fail(uow, allocation, exc.message, outcome)
                continue

            allocation.mark_paid(transfer_reference=result.reference or transfer_reference)
            await uow.allocations.update(allocation)
            po.release_payout()
            await uow.purchase_orders.update(po)
            outcome.items.append(self._item(allocation))
            logger.info(
                "payout_transferred",
                payment_id=payment_id,
                supplier_id=allocation.supplier_id,
                amount=str(allocation.amount),
                transfer_reference=allocation.transfer_reference,
            )

        outcome.complete = not outcome.errors
        return outcome

    async def _resolve_recipient(self, uow: AbstractUnitOfWork, supplier: Optional[Supplier]) -> Optional[str]:
        if supplier is None:
            return None
        if supplier.recipient_code:
            return supplier.recipient_code
        if not supplier.has_bank_details():
            return None
        code = await self._gateway.create_transfer_recipient(CreateRecipient(
            name=supplier.account_name or supplier.name,
            account_number=supplier.account_number,
            bank_code=supplier.bank_code,
            currency=self._settings.settlement.currency,
        ))
        await uow.suppliers.set_recipient_code(supplier.id, code)
        supplier.recipient_code = code
        return code

    async def _fail(
        self,
        uow: AbstractUnitOfWork,
        allocation: SupplierPaymentAllocation,
        reason: str,
        outcome: PayoutOutcome,
    ) -> None:
        allocation.mark_failed(reason)
        await uow.allocations.update(allocation)
        outcome.errors.append(f"supplier {allocation.supplier_id}: {reason}")
        outcome.items.append(self._item(allocation, reason=reason))
        logger.warning(
            "payout_transfer_failed",
            payment_id=allocation.payment_id,
            supplier_id=allocation.supplier_id,
            allocation_id=allocation.id,
            error=reason,
        )

    @staticmethod
    def _item(allocation: SupplierPaymentAllocation, reason: Optional[str] = None) -> PayoutItem:
        return PayoutItem(
            supplier_id=allocation.supplier_id,
            allocation_id=allocation.id,
            amount=allocation.amount,
            status=allocation.status.value,
            transfer_reference=allocation.transfer_reference,
            reason=reason,
        )

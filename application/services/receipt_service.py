"""
Receipt issuance: one immutable snapshot per PAID payment.
"""
from __future__ import annotations

import secrets
from datetime import datetime, timezone
from typing import Callable, Optional

from application.dtos.settlement import ReceiptDTO
from application.ports.settlement_lock import SettlementLock
from core.logging_config import get_logger
from core.settings import PaymentSettings, payment_settings
from domain.common.exceptions import (
    BusinessException,
    PaymentIntentNotFoundException,
    ReferenceExhaustedException,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.entity import Order
from domain.payment.entity import PaymentIntent, PaymentStatus
from domain.settlement.references import CROCKFORD_ALPHABET
from shared.codes import BusinessCode


logger = get_logger(__name__)


def receipt_number(intent: PaymentIntent) -> str:
    """RCT-YYYYMMDD-<ref 后6位><id 后4位>"""
    paid_at = intent.paid_at or datetime.now(timezone.utc)
    return f"RCT-{paid_at:%Y%m%d}-{intent.reference[-6:]}{str(intent.id)[-4:]}"


def _suffix() -> str:
    return "".join(secrets.choice(CROCKFORD_ALPHABET) for _ in range(2))


class ReceiptService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        *,
        lock: Optional[SettlementLock] = None,
        settings: Optional[PaymentSettings] = None,
        suffix_generator: Callable[[], str] = _suffix,
    ) -> None:
        self._uow_factory = uow_factory
        self._lock = lock
        self._settings = settings or payment_settings
        self._suffix = suffix_generator

    async def issue_receipt_once(self, payment_id: int, *, uow: Optional[AbstractUnitOfWork] = None) -> Optional[dict]:
        if uow is None:
            async with self._uow_factory() as own:
                return await self._issue(payment_id, own)
        return await self._issue(payment_id, uow)

    async def _issue(self, payment_id: int, uow: AbstractUnitOfWork) -> Optional[dict]:
        intent = await uow.payment_intents.get_by_id(payment_id)
        if intent is None or intent.status != PaymentStatus.PAID:
            return None
        if intent.receipt_no:
            return intent.receipt_data

        order = await uow.orders.get_by_id(intent.order_id)
        number = receipt_number(intent)
        if await uow.payment_intents.receipt_no_exists(number):
            number = f"{number}{self._suffix()}"
            if await uow.payment_intents.receipt_no_exists(number):
                raise ReferenceExhaustedException("receipt_no", 2)

        issued_at = datetime.now(timezone.utc)
        snapshot = self._snapshot(intent, order, number, issued_at)
        intent.issue_receipt(number, snapshot, issued_at)
        await uow.payment_intents.update(intent)
        logger.info("receipt_issued", payment_id=payment_id, receipt_no=number)
        return snapshot

    def _snapshot(self, intent: PaymentIntent, order: Optional[Order], number: str, issued_at: datetime) -> dict:
        merchant = self._settings.settlement.merchant
        items = []
        customer = {}
        if order is not None:
            customer = {
                "name": order.customer_name,
                "email": order.customer_email,
                "phone": order.customer_phone,
            }
            items = [
                {
                    "order_item_id": item.id,
                    "title": item.title,
                    "quantity": item.effective_quantity,
                    "unit_price": str(item.unit_price),
                    "line_total": str(item.customer_total),
                }
                for item in order.items
            ]
        return {
            "receipt_no": number,
            "issued_at": issued_at.isoformat(),
            "payment_id": intent.id,
            "order_id": intent.order_id,
            "reference": intent.reference,
            "paid_at": intent.paid_at.isoformat() if intent.paid_at else None,
            "channel": intent.channel,
            "currency": self._settings.settlement.currency,
            "amount": str(intent.amount),
            "service_fee": str(order.service_fee) if order is not None else None,
            "merchant": merchant.model_dump(),
            "customer": customer,
            "items": items,
        }

    async def get_receipt(self, payment_key: str) -> ReceiptDTO:
        """按支付ID或支付引用读取收据；已支付但尚未开具时就地开具"""
        async with self._uow_factory(readonly=True) as uow:
            intent = None
            if payment_key.isdigit():
                intent = await uow.payment_intents.get_by_id(int(payment_key))
            if intent is None:
                intent = await uow.payment_intents.get_by_reference(payment_key)
        if intent is None:
            raise PaymentIntentNotFoundException(reference=payment_key)
        if intent.status != PaymentStatus.PAID:
            raise BusinessException(
                code=BusinessCode.NOT_FOUND,
                message="支付尚未完成，收据不可用",
                error_type="ReceiptNotAvailable",
                details={"reference": intent.reference, "status": intent.status.value},
            )

        if not intent.receipt_no:
            if self._lock is not None:
                async with self._lock.hold(intent.order_id):
                    await self.issue_receipt_once(intent.id)
            else:
                await self.issue_receipt_once(intent.id)
            async with self._uow_factory(readonly=True) as uow:
                intent = await uow.payment_intents.get_by_id(intent.id)

        return ReceiptDTO(
            receipt_no=intent.receipt_no,
            issued_at=intent.receipt_issued_at,
            payment_id=intent.id,
            reference=intent.reference,
            data=intent.receipt_data or {},
        )

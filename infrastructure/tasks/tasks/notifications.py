"""Notification Celery tasks.

Message rendering and delivery mechanics belong to the messaging provider;
these tasks are the hand-off point and only record what would be sent.
"""
from __future__ import annotations

from typing import Optional

from celery import shared_task

from core.logging_config import get_logger
from ..utils.base_task import BaseTask

logger = get_logger(__name__)


@shared_task(
    name="notifications.supplier_order",
    bind=True,
    base=BaseTask,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
    retry_kwargs={"max_retries": 5},
)
def notify_supplier_order(
    self,
    order_id: int,
    supplier_id: int,
    purchase_order_id: int,
    supplier_order_ref: str,
    email: Optional[str] = None,
    phone: Optional[str] = None,
) -> None:
    """Tell a supplier about a funded purchase order."""
    logger.info(
        "supplier_order_notification",
        order_id=order_id,
        supplier_id=supplier_id,
        purchase_order_id=purchase_order_id,
        supplier_order_ref=supplier_order_ref,
        has_email=bool(email),
        has_phone=bool(phone),
    )


@shared_task(
    name="notifications.customer_order_paid",
    bind=True,
    base=BaseTask,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
    retry_kwargs={"max_retries": 5},
)
def notify_customer_order_paid(self, order_id: int, payment_id: int, email: str) -> None:
    logger.info("customer_order_paid_email", order_id=order_id, payment_id=payment_id, email=email)

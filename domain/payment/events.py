"""
Payment domain events.

Dataclass events record important payment lifecycle facts for downstream handling
(e.g., logging, task dispatch). Domain remains free of infrastructure imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
import uuid


@dataclass
class PaymentEvent:
    order_id: int
    reference: str
    payment_id: Optional[int] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class PaymentIntentCreated(PaymentEvent):
    channel: str = ""


@dataclass
class PaymentMarkedPaid(PaymentEvent):
    amount: str = ""
    fee: str = ""
    canceled_siblings: int = 0


@dataclass
class PaymentFailed(PaymentEvent):
    pass


@dataclass
class PaymentCanceled(PaymentEvent):
    reason: Optional[str] = None

"""
Operator-tunable settlement settings port.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Protocol, runtime_checkable

from domain.settlement.fees import FeeSchedule
from domain.settlement.profit import ProfitMode


@dataclass(frozen=True)
class SettlementSnapshot:
    profit_mode: ProfitMode = ProfitMode.ACCURATE
    base_fee: Decimal = Decimal("0")
    comms_unit_cost: Decimal = Decimal("0")
    fee_schedule: FeeSchedule = field(default_factory=FeeSchedule)


@runtime_checkable
class SettlementSettingsProvider(Protocol):
    """Read-mostly source of operator values; ``refresh`` drops any cache."""

    async def get(self) -> SettlementSnapshot: ...

    async def refresh(self) -> SettlementSnapshot: ...

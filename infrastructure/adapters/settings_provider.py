"""Operator settings provider reading the ``settings`` key/value table.

Values are cached for ``cache_ttl_seconds``; missing or unparsable values fall
back to the configured defaults.
"""
from __future__ import annotations

import time
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, Optional

from application.ports.settings_provider import SettlementSettingsProvider, SettlementSnapshot
from core.logging_config import get_logger
from core.settings import SettlementSettings
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.settlement.fees import FeeSchedule
from domain.settlement.profit import ProfitMode


logger = get_logger(__name__)

PROFIT_MODE_KEY = "profitMode"
BASE_FEE_KEYS = ("serviceFeeBase", "platformBaseFee")
COMMS_UNIT_COST_KEY = "commsUnitCost"
FEE_SCHEDULE_KEYS = {
    "gatewayLocalRate": "local_rate",
    "gatewayLocalFlat": "local_flat",
    "gatewayLocalFlatThreshold": "local_flat_threshold",
    "gatewayLocalCap": "local_cap",
    "gatewayIntlRate": "international_rate",
    "gatewayIntlFlat": "international_flat",
}
ALL_KEYS = (PROFIT_MODE_KEY, *BASE_FEE_KEYS, COMMS_UNIT_COST_KEY, *FEE_SCHEDULE_KEYS)


def _decimal(raw: Optional[str], default: Decimal, key: str) -> Decimal:
    if raw is None or str(raw).strip() == "":
        return default
    try:
        value = Decimal(str(raw).strip())
    except InvalidOperation:
        logger.warning("operator_setting_invalid", key=key, value=raw)
        return default
    if not value.is_finite() or value < 0:
        logger.warning("operator_setting_invalid", key=key, value=raw)
        return default
    return value


def build_snapshot(values: Dict[str, str], defaults: SettlementSettings) -> SettlementSnapshot:
    base_raw = next((values[k] for k in BASE_FEE_KEYS if values.get(k) not in (None, "")), None)
    fee_defaults = defaults.fees
    schedule = FeeSchedule(**{
        attr: _decimal(values.get(key), getattr(fee_defaults, attr), key)
        for key, attr in FEE_SCHEDULE_KEYS.items()
    })
    return SettlementSnapshot(
        profit_mode=ProfitMode.parse(values.get(PROFIT_MODE_KEY), ProfitMode(defaults.default_profit_mode)),
        base_fee=_decimal(base_raw, defaults.default_base_fee, BASE_FEE_KEYS[0]),
        comms_unit_cost=_decimal(values.get(COMMS_UNIT_COST_KEY), defaults.comms_unit_cost, COMMS_UNIT_COST_KEY),
        fee_schedule=schedule,
    )


class DatabaseSettlementSettingsProvider(SettlementSettingsProvider):
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        defaults: SettlementSettings,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._uow_factory = uow_factory
        self._defaults = defaults
        self._ttl = defaults.settings_cache_ttl_seconds
        self._clock = clock
        self._cached: Optional[SettlementSnapshot] = None
        self._loaded_at: float = 0.0

    async def get(self) -> SettlementSnapshot:
        if self._cached is not None and self._clock() - self._loaded_at < self._ttl:
            return self._cached
        return await self.refresh()

    async def refresh(self) -> SettlementSnapshot:
        async with self._uow_factory(readonly=True) as uow:
            values = await uow.operator_settings.get_values(ALL_KEYS)
        self._cached = build_snapshot(values, self._defaults)
        self._loaded_at = self._clock()
        logger.debug(
            "settlement_settings_loaded",
            profit_mode=self._cached.profit_mode.value,
            base_fee=str(self._cached.base_fee),
        )
        return self._cached


class StaticSettlementSettingsProvider(SettlementSettingsProvider):
    """Fixed snapshot (configured defaults or an explicit one)."""

    def __init__(self, snapshot: Optional[SettlementSnapshot] = None, defaults: Optional[SettlementSettings] = None):
        self._snapshot = snapshot or build_snapshot({}, defaults or SettlementSettings())

    async def get(self) -> SettlementSnapshot:
        return self._snapshot

    async def refresh(self) -> SettlementSnapshot:
        return self._snapshot

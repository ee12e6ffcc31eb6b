"""
Payment and settlement settings using pydantic-settings v2 with nested env keys.

Kept apart from core.config.Settings so gateway credentials and settlement
switches can be loaded (and overridden in tests) on their own.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field


class PaymentTimeouts(BaseModel):
    connect: float = 2.0
    read: float = 10.0
    write: float = 10.0
    total: float = 15.0


class PaymentRetry(BaseModel):
    max: int = 2
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    # Window used to drop byte-identical redeliveries (redis de-duplication)
    tolerance_seconds: int = 300
    accept_card: bool = True
    accept_bank_transfer: bool = True


class PaystackSettings(BaseModel):
    secret_key: Optional[str] = None
    base_url: str = "https://api.paystack.co"
    # Public site the hosted checkout redirects back to
    callback_base_url: str = "http://localhost:3000"
    split_bearer_type: str = "account"


class FeeScheduleSettings(BaseModel):
    local_rate: Decimal = Decimal("0.015")
    local_flat: Decimal = Decimal("100")
    local_flat_threshold: Decimal = Decimal("2500")
    local_cap: Decimal = Decimal("2000")
    international_rate: Decimal = Decimal("0.039")
    international_flat: Decimal = Decimal("100")


class MerchantSettings(BaseModel):
    name: str = "Marketplace"
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    logo_url: Optional[str] = None


class SettlementSettings(BaseModel):
    sandbox_mode: bool = False
    inline_approval: Literal["auto", "manual"] = "auto"
    pending_ttl_minutes: int = 60
    split_enabled: bool = False
    defer_fanout: bool = False
    skip_fulfillment_confirmation: bool = False
    currency: str = "NGN"
    local_country: str = "NG"
    reference_max_attempts: int = 5

    # Bank transfer instructions for the manual channel
    bank_name: Optional[str] = None
    bank_account_name: Optional[str] = None
    bank_account_number: Optional[str] = None

    # Defaults for operator-tunable values (overridden by the settings table)
    default_profit_mode: Literal["simple", "accurate"] = "accurate"
    default_base_fee: Decimal = Decimal("0")
    comms_unit_cost: Decimal = Decimal("0")
    settings_cache_ttl_seconds: int = 60
    fees: FeeScheduleSettings = Field(default_factory=FeeScheduleSettings)
    merchant: MerchantSettings = Field(default_factory=MerchantSettings)


class PaymentSettings(BaseSettings):
    default_provider: str = "paystack"
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)

    paystack: PaystackSettings = Field(default_factory=PaystackSettings)
    settlement: SettlementSettings = Field(default_factory=SettlementSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )


payment_settings = PaymentSettings()

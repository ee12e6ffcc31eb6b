"""
Gateway DTOs (Pydantic v2) exchanged across the payment gateway port.

Amounts are major units (Decimal) on the application side; adapters convert
to and from the provider's minor units.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Literal

from pydantic import BaseModel, Field, field_validator
from pydantic.types import condecimal


def _upper_currency(v: str) -> str:
    u = (v or "").upper()
    if len(u) != 3 or not u.isalpha():
        raise ValueError("currency must be ISO-4217 alpha-3")
    return u


class InitializeCharge(BaseModel):
    reference: str
    amount: condecimal(gt=0)  # type: ignore[valid-type]
    email: str
    currency: str = Field(default="NGN")
    callback_url: Optional[str] = None
    split_code: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None

    @field_validator("currency")
    @classmethod
    def _validate_currency(cls, v: str) -> str:
        return _upper_currency(v)


class ChargeSession(BaseModel):
    reference: str
    authorization_url: str
    access_code: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)


class TransactionVerification(BaseModel):
    reference: str
    # normalised: success / failed / pending
    status: Literal["success", "failed", "pending"]
    provider_status: Optional[str] = None
    amount: Decimal
    fees: Optional[Decimal] = None
    currency: Optional[str] = None
    channel: Optional[str] = None
    card_country: Optional[str] = None
    paid_at: Optional[datetime] = None
    raw: dict[str, Any] = Field(default_factory=dict)


class SplitShare(BaseModel):
    subaccount: str
    # minor units
    share: int = Field(gt=0)


class CreateSplit(BaseModel):
    name: str
    currency: str = Field(default="NGN")
    shares: list[SplitShare]
    bearer_type: str = "account"

    @field_validator("currency")
    @classmethod
    def _validate_currency(cls, v: str) -> str:
        return _upper_currency(v)


class SplitResult(BaseModel):
    split_code: str
    raw: dict[str, Any] = Field(default_factory=dict)


class CreateRecipient(BaseModel):
    name: str
    account_number: str
    bank_code: str
    currency: str = Field(default="NGN")
    type: str = "nuban"


class TransferRequest(BaseModel):
    amount: condecimal(gt=0)  # type: ignore[valid-type]
    recipient_code: str
    reference: str
    reason: Optional[str] = None
    currency: str = Field(default="NGN")


class TransferResult(BaseModel):
    reference: str
    status: str
    transfer_code: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)

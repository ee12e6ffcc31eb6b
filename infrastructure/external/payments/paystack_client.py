"""
Paystack adapter over the REST API (httpx + tenacity).

Amounts cross the wire in kobo; the adapter converts to and from major units.
Webhooks are authenticated with HMAC-SHA512 of the raw body keyed by the
secret key and sent in the ``x-paystack-signature`` header.
"""
from __future__ import annotations

import hashlib
import hmac
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import httpx

from application.dtos.payments import (
    ChargeSession,
    CreateRecipient,
    CreateSplit,
    InitializeCharge,
    SplitResult,
    TransactionVerification,
    TransferRequest,
    TransferResult,
)
from core.settings import payment_settings
from domain.settlement.fees import from_minor, to_minor
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.exceptions import (
    PaymentProviderError,
    PaymentRecoverableError,
)


SIGNATURE_HEADER = "x-paystack-signature"


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class PaystackClient(BasePaymentClient):
    provider = "paystack"

    def __init__(
        self,
        *,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            timeouts=payment_settings.timeouts.model_dump(),
            retry={"max": payment_settings.retry.max, "base": payment_settings.retry.base_backoff},
            transport=transport,
        )
        self._secret_key = secret_key or payment_settings.paystack.secret_key
        if not self._secret_key:
            raise RuntimeError("PAYSTACK__SECRET_KEY not configured")
        self._base_url = (base_url or payment_settings.paystack.base_url).rstrip("/")

    def _client_options(self) -> dict[str, Any]:
        return {
            "base_url": self._base_url,
            "headers": {
                "Authorization": f"Bearer {self._secret_key}",
                "Content-Type": "application/json",
            },
        }

    async def _request(self, method: str, path: str, *, json: Optional[dict] = None) -> dict:
        async def call():
            async with self.client() as c:
                return await c.request(method, path, json=json)

        try:
            resp = await self._retry(call)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            self._log("paystack_transport_error", path=path, error=str(e))
            raise PaymentRecoverableError(str(e) or "transport error", provider=self.provider)

        try:
            body = resp.json()
        except ValueError:
            body = {}

        if resp.status_code == 429 or resp.status_code >= 500:
            self._log("paystack_unavailable", path=path, status=resp.status_code)
            raise PaymentRecoverableError(
                body.get("message") or f"paystack returned {resp.status_code}",
                provider=self.provider,
                http_status=resp.status_code,
            )
        if resp.status_code >= 400 or not body.get("status"):
            self._log("paystack_rejected", path=path, status=resp.status_code, message=body.get("message"))
            raise PaymentProviderError(
                body.get("message") or f"paystack returned {resp.status_code}",
                provider=self.provider,
                provider_code=body.get("code"),
                http_status=resp.status_code,
            )
        return body.get("data") or {}

    async def initialize_charge(self, req: InitializeCharge) -> ChargeSession:  # type: ignore[override]
        payload: dict[str, Any] = {
            "email": req.email,
            "amount": to_minor(req.amount),
            "reference": req.reference,
            "currency": req.currency,
        }
        if req.callback_url:
            payload["callback_url"] = req.callback_url
        if req.split_code:
            payload["split_code"] = req.split_code
        if req.metadata:
            payload["metadata"] = req.metadata
        data = await self._request("POST", "/transaction/initialize", json=payload)
        self._log("paystack_charge_initialized", reference=req.reference, split=bool(req.split_code))
        return ChargeSession(
            reference=data.get("reference") or req.reference,
            authorization_url=data["authorization_url"],
            access_code=data.get("access_code"),
            raw=data,
        )

    async def verify_transaction(self, reference: str) -> TransactionVerification:  # type: ignore[override]
        data = await self._request("GET", f"/transaction/verify/{reference}")
        provider_status = data.get("status") or ""
        fees = data.get("fees")
        authorization = data.get("authorization") or {}
        self._log("paystack_transaction_verified", reference=reference, status=provider_status)
        return TransactionVerification(
            reference=data.get("reference") or "",
            status=self._map_status(provider_status),
            provider_status=provider_status,
            amount=from_minor(data.get("amount") or 0),
            fees=from_minor(fees) if fees is not None else None,
            currency=data.get("currency"),
            channel=data.get("channel"),
            card_country=authorization.get("country_code"),
            paid_at=_parse_timestamp(data.get("paid_at") or data.get("paidAt")),
            raw=data,
        )

    async def create_split(self, req: CreateSplit) -> SplitResult:  # type: ignore[override]
        payload = {
            "name": req.name,
            "type": "flat",
            "currency": req.currency,
            "subaccounts": [{"subaccount": s.subaccount, "share": s.share} for s in req.shares],
            "bearer_type": req.bearer_type,
        }
        data = await self._request("POST", "/split", json=payload)
        self._log("paystack_split_created", split_code=data.get("split_code"), parts=len(req.shares))
        return SplitResult(split_code=data["split_code"], raw=data)

    async def create_transfer_recipient(self, req: CreateRecipient) -> str:  # type: ignore[override]
        payload = {
            "type": req.type,
            "name": req.name,
            "account_number": req.account_number,
            "bank_code": req.bank_code,
            "currency": req.currency,
        }
        data = await self._request("POST", "/transferrecipient", json=payload)
        return data["recipient_code"]

    async def execute_transfer(self, req: TransferRequest) -> TransferResult:  # type: ignore[override]
        payload = {
            "source": "balance",
            "amount": to_minor(req.amount),
            "recipient": req.recipient_code,
            "reference": req.reference,
            "currency": req.currency,
        }
        if req.reason:
            payload["reason"] = req.reason
        data = await self._request("POST", "/transfer", json=payload)
        self._log("paystack_transfer_queued", reference=req.reference, status=data.get("status"))
        return TransferResult(
            reference=data.get("reference") or req.reference,
            status=data.get("status") or "pending",
            transfer_code=data.get("transfer_code"),
            raw=data,
        )

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:  # type: ignore[override]
        if not signature:
            return False
        expected = hmac.new(self._secret_key.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())

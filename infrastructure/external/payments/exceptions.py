"""
Gateway errors mapped to unified BusinessException variants.

The settlement services treat every GatewayError as "outcome unknown": the
intent is left untouched and verification reports PENDING.
"""
from __future__ import annotations

from typing import Optional
from domain.common.exceptions import BusinessException
from shared.codes.payment_codes import PaymentCode


class GatewayError(BusinessException):
    error_type = "GatewayError"
    code = PaymentCode.PROVIDER_ERROR

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        provider_code: Optional[str] = None,
        http_status: Optional[int] = None,
        details: Optional[dict] = None,
    ):
        full_details = {"provider": provider, "provider_code": provider_code, "http_status": http_status}
        if details:
            full_details.update(details)
        self.provider = provider
        self.http_status = http_status
        super().__init__(
            code=self.code,
            message=message,
            error_type=self.error_type,
            details=full_details,
        )


class PaymentProviderError(GatewayError):
    """Provider rejected the request (4xx, status=false)."""
    error_type = "PaymentProviderError"
    code = PaymentCode.PROVIDER_ERROR


class PaymentRecoverableError(GatewayError):
    """Transport failure, timeout, 429 or 5xx: safe to retry later."""
    error_type = "PaymentRecoverableError"
    code = PaymentCode.PROVIDER_RECOVERABLE


class PaymentSignatureError(BusinessException):
    def __init__(self, message: str, *, provider: str, details: Optional[dict] = None):
        full_details = {"provider": provider}
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.SIGNATURE_ERROR,
            message=message,
            error_type="PaymentSignatureError",
            details=full_details,
        )

"""
Payment gateway codes and provider status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    PROVIDER_RECOVERABLE = 60001
    SIGNATURE_ERROR = 60002
    TIMEOUT = 60003
    RATE_LIMITED = 60004


# Provider transaction status -> verification outcome (success / failed / pending)
PROVIDER_STATUS_TO_INTERNAL = {
    "paystack": {
        "success": "success",
        "failed": "failed",
        "reversed": "failed",
        "abandoned": "pending",
        "ongoing": "pending",
        "pending": "pending",
        "processing": "pending",
        "queued": "pending",
    },
}

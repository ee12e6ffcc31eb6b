"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
"""
from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

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


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway protocol for the hosted-checkout provider.

    Implementations should be async and side-effect free beyond IO. Transport
    and provider failures surface as PaymentProviderError subclasses.
    """

    provider: str

    async def initialize_charge(self, req: InitializeCharge) -> ChargeSession: ...

    async def verify_transaction(self, reference: str) -> TransactionVerification: ...

    async def create_split(self, req: CreateSplit) -> SplitResult: ...

    async def create_transfer_recipient(self, req: CreateRecipient) -> str: ...

    async def execute_transfer(self, req: TransferRequest) -> TransferResult: ...

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> bool: ...

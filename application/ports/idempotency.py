"""
Delivery de-duplication port used by the webhook path.

Best effort only: the database guards are authoritative, so implementations
must never raise.
"""
from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class DeliveryCache(Protocol):
    async def seen(self, key: str) -> bool: ...

    async def remember(self, key: str, ttl_seconds: int) -> None: ...

"""
Settlement lock port: serialises settlement work per order.
"""
from __future__ import annotations

from typing import AsyncContextManager, Protocol, runtime_checkable


@runtime_checkable
class SettlementLock(Protocol):
    """Mutual exclusion scoped to one order.

    ``async with lock.hold(order_id):`` blocks until the lock is acquired and
    raises ``TimeoutError`` when it cannot be acquired in time. Not reentrant.
    """

    def hold(self, order_id: int) -> AsyncContextManager[None]: ...

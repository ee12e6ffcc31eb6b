"""Settlement lock adapters implementing the application SettlementLock port.

Redis-backed in production (shared across API workers and Celery), an
in-process asyncio lock otherwise.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from application.ports.settlement_lock import SettlementLock
from core.logging_config import get_logger
from infrastructure.external.cache import RedisClient


logger = get_logger(__name__)


def _lock_name(order_id: int) -> str:
    return f"settlement:order:{order_id}"


class LocalSettlementLock(SettlementLock):
    """One asyncio.Lock per order; valid only inside a single event loop."""

    def __init__(self, blocking_timeout: float = 30.0):
        self._locks: Dict[int, asyncio.Lock] = {}
        # 每个订单锁当前的持有者 + 等待者数量，归零时回收锁对象
        self._users: Dict[int, int] = {}
        self._blocking_timeout = blocking_timeout

    @asynccontextmanager
    async def hold(self, order_id: int) -> AsyncIterator[None]:
        lock = self._locks.setdefault(order_id, asyncio.Lock())
        self._users[order_id] = self._users.get(order_id, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self._blocking_timeout)
            except asyncio.TimeoutError:
                logger.warning("settlement_lock_timeout", order_id=order_id, backend="local")
                raise TimeoutError(f"获取锁失败: {_lock_name(order_id)}")
            try:
                yield None
            finally:
                lock.release()
        finally:
            self._release_slot(order_id)

    def _release_slot(self, order_id: int) -> None:
        remaining = self._users.get(order_id, 1) - 1
        if remaining > 0:
            self._users[order_id] = remaining
            return
        self._users.pop(order_id, None)
        self._locks.pop(order_id, None)


class RedisSettlementLock(SettlementLock):
    def __init__(self, redis: RedisClient, *, timeout: int = 60, blocking_timeout: int = 30):
        self._redis = redis
        self._timeout = timeout
        self._blocking_timeout = blocking_timeout

    @asynccontextmanager
    async def hold(self, order_id: int) -> AsyncIterator[None]:
        async with self._redis.lock(
            _lock_name(order_id),
            timeout=self._timeout,
            blocking_timeout=self._blocking_timeout,
        ):
            yield None

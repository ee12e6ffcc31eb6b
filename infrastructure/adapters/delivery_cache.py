"""Webhook delivery de-duplication backed by redis."""
from __future__ import annotations

from application.ports.idempotency import DeliveryCache
from core.logging_config import get_logger
from infrastructure.external.cache import RedisClient


logger = get_logger(__name__)


class RedisDeliveryCache(DeliveryCache):
    def __init__(self, redis: RedisClient):
        self._redis = redis

    async def seen(self, key: str) -> bool:
        # RedisClient 读写失败时返回默认值，不会抛出
        return bool(await self._redis.exists(key))

    async def remember(self, key: str, ttl_seconds: int) -> None:
        if not await self._redis.set(key, "1", ttl=ttl_seconds):
            logger.warning("webhook_dedupe_store_failed", key=key)

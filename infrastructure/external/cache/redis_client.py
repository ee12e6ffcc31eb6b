"""
Redis客户端 - 结算核心使用的键值、去重标记与分布式锁
"""
from __future__ import annotations

import asyncio
import json
import socket
import time
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from core.config import settings
from core.logging_config import get_logger

logger = get_logger(__name__)


class RedisClient:
    """
    Redis客户端封装

    特性:
    - 命名空间隔离
    - 自动 JSON 序列化/反序列化
    - 分布式锁
    - 读写失败只记录日志并返回默认值，锁失败向上抛出
    """

    def __init__(self, client: aioredis.Redis, namespace: str = "", enable_logging: bool = True):
        self._client = client
        self._namespace = namespace.strip(":")
        self._enable_logging = enable_logging

    def _format_key(self, key: str) -> str:
        """格式化键名，添加命名空间前缀"""
        if not self._namespace:
            return key
        return f"{self._namespace}:{key}"

    @staticmethod
    def _serialize(value: Any) -> str:
        if isinstance(value, (str, int, float)):
            return str(value)
        return json.dumps(value, default=str, ensure_ascii=False)

    @staticmethod
    def _deserialize(value: Optional[str]) -> Any:
        if value is None:
            return None
        try:
            return json.loads(value)
        except (TypeError, ValueError):
            return value

    async def _timed(self, op_name: str, operation: Callable, *args, **kwargs) -> Any:
        start = time.perf_counter()
        try:
            return await operation(*args, **kwargs)
        finally:
            if self._enable_logging:
                logger.debug(
                    "redis_op",
                    op=op_name,
                    duration_ms=round((time.perf_counter() - start) * 1000, 2),
                )

    async def get(self, key: str, default: Any = None) -> Any:
        formatted_key = self._format_key(key)
        try:
            value = await self._timed("get", self._client.get, formatted_key)
            return self._deserialize(value) if value is not None else default
        except RedisError as e:
            logger.error("redis_get_failed", key=formatted_key, error=str(e))
            return default

    async def set(self, key: str, value: Any, ttl: Optional[int] = None, nx: bool = False) -> bool:
        """设置值；nx=True 时仅在键不存在时写入"""
        formatted_key = self._format_key(key)
        expire = ttl if ttl is not None else settings.redis.default_ttl
        try:
            result = await self._timed(
                "set",
                self._client.set,
                formatted_key,
                self._serialize(value),
                ex=expire if expire and expire > 0 else None,
                nx=nx,
            )
            return bool(result)
        except RedisError as e:
            logger.error("redis_set_failed", key=formatted_key, error=str(e))
            return False

    async def delete(self, *keys: str) -> int:
        formatted_keys = [self._format_key(k) for k in keys]
        try:
            return await self._timed("delete", self._client.delete, *formatted_keys)
        except RedisError as e:
            logger.error("redis_delete_failed", keys=formatted_keys, error=str(e))
            return 0

    async def exists(self, *keys: str) -> int:
        formatted_keys = [self._format_key(k) for k in keys]
        try:
            return await self._timed("exists", self._client.exists, *formatted_keys)
        except RedisError as e:
            logger.error("redis_exists_failed", keys=formatted_keys, error=str(e))
            return 0

    @asynccontextmanager
    async def lock(self, key: str, timeout: int = 10, blocking_timeout: int = 5):
        """
        分布式锁上下文管理器

        Args:
            key: 锁的键名
            timeout: 锁的超时时间（秒），持有者崩溃后自动释放
            blocking_timeout: 获取锁的等待时间（秒）
        """
        lock_key = f"lock:{self._format_key(key)}"
        lock = self._client.lock(lock_key, timeout=timeout, blocking_timeout=blocking_timeout)

        acquired = await lock.acquire()
        if not acquired:
            raise TimeoutError(f"获取锁失败: {lock_key}")
        try:
            yield lock
        finally:
            try:
                await lock.release()
            except RedisError as e:
                logger.error("redis_lock_release_failed", key=lock_key, error=str(e))

    async def health_check(self) -> bool:
        try:
            return await self._client.ping()
        except RedisError as e:
            logger.error("redis_health_check_failed", error=str(e))
            return False

    async def aclose(self) -> None:
        try:
            await self._client.aclose()
        except RedisError as e:
            logger.error("redis_close_failed", error=str(e))

    @property
    def client(self) -> aioredis.Redis:
        """获取原始Redis客户端（谨慎使用）"""
        return self._client


# ============= 全局实例管理 =============

_redis_client: Optional[aioredis.Redis] = None
_cache_instance: Optional[RedisClient] = None
_lock = asyncio.Lock()


async def _connect(**kwargs) -> aioredis.Redis:
    if not settings.redis.url:
        raise RuntimeError("REDIS__URL 未配置，无法初始化Redis客户端")

    # 构建跨平台 keepalive 选项（若可用）
    keepalive_opts = {}
    if hasattr(socket, "TCP_KEEPIDLE") and hasattr(socket, "TCP_KEEPINTVL") and hasattr(socket, "TCP_KEEPCNT"):
        keepalive_opts = {
            socket.TCP_KEEPIDLE: 1,
            socket.TCP_KEEPINTVL: 1,
            socket.TCP_KEEPCNT: 3,
        }

    try:
        client = aioredis.from_url(
            settings.redis.url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=settings.redis.max_connections,
            socket_keepalive=True,
            socket_keepalive_options=keepalive_opts,
            **kwargs
        )
        await client.ping()
    except RedisError as e:
        logger.error("redis_init_failed", error=str(e))
        raise
    return client


async def open_redis_client(namespace: Optional[str] = None) -> RedisClient:
    """创建独立的Redis客户端（Celery 任务使用，调用方负责 aclose）"""
    client = await _connect()
    return RedisClient(client=client, namespace=namespace or settings.redis.namespace)


async def init_redis_client(namespace: Optional[str] = None, **kwargs) -> RedisClient:
    """初始化全局Redis客户端（幂等）"""
    global _redis_client, _cache_instance

    if _cache_instance is not None:
        return _cache_instance

    async with _lock:
        if _cache_instance is not None:
            return _cache_instance

        client = await _connect(**kwargs)
        _redis_client = client
        _cache_instance = RedisClient(client=client, namespace=namespace or settings.redis.namespace)
        logger.info("redis_initialized", namespace=namespace or settings.redis.namespace)
        return _cache_instance


async def get_redis_client() -> RedisClient:
    """获取全局Redis客户端实例"""
    if _cache_instance is None:
        return await init_redis_client()
    return _cache_instance


def redis_configured() -> bool:
    return bool(settings.redis.url)


async def shutdown_redis_client() -> None:
    """关闭Redis连接"""
    global _redis_client, _cache_instance

    if _redis_client is not None:
        try:
            await _redis_client.aclose()
            logger.info("redis_closed")
        except RedisError as e:
            logger.error("redis_close_failed", error=str(e))
        finally:
            _redis_client = None
            _cache_instance = None

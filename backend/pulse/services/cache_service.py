"""
结果缓存服务

键格式: pulse:{kind}:{id}[:{suffix}]，kind ∈ query/dataset/visualization/dashboard/report

后端:
1. Redis (REDIS_ENABLED=true)：多副本共享，进程重启后仍然有效
2. 进程内 LRU：开发环境或 Redis 未启用时使用

缓存是尽力而为的：后端异常只记录日志并按未命中/空操作返回，
调用方不需要关心缓存是否可用。
"""

import fnmatch
import json
import logging
import time
from collections import OrderedDict
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple, Union

from pulse.core.config import settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "pulse"
CACHE_KINDS = ("query", "dataset", "visualization", "dashboard", "report")


def cache_key(kind: str, entity_id: Union[int, str], suffix: Optional[str] = None) -> str:
    """
    生成缓存键

    Args:
        kind: 缓存类别
        entity_id: 实体ID
        suffix: 可选后缀（如参数指纹）
    """
    if kind not in CACHE_KINDS:
        raise ValueError(f"unknown cache kind: {kind}")
    key = f"{KEY_PREFIX}:{kind}:{entity_id}"
    if suffix:
        key = f"{key}:{suffix}"
    return key


def ttl_for(kind: str) -> int:
    """各类缓存的默认 TTL"""
    return {
        "query": settings.CACHE_TTL_QUERY,
        "dataset": settings.CACHE_TTL_DATASET,
        "visualization": settings.CACHE_TTL_VISUALIZATION,
        "dashboard": settings.CACHE_TTL_DASHBOARD,
        "report": settings.CACHE_TTL_REPORT,
    }[kind]


class MemoryBackend:
    """进程内缓存：LRU 淘汰 + TTL 过期，线程安全"""

    name = "memory"

    def __init__(self, max_entries: int = 1000):
        self.max_entries = max(1, int(max_entries))
        self._store: "OrderedDict[str, Tuple[str, Optional[float]]]" = OrderedDict()
        self._lock = Lock()

    def _expired(self, expires_at: Optional[float]) -> bool:
        return expires_at is not None and expires_at <= time.monotonic()

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._expired(expires_at):
                self._store.pop(key, None)
                return None
            self._store.move_to_end(key)
            return value

    async def set(self, key: str, value: str, ttl: Optional[int]) -> None:
        expires_at = time.monotonic() + ttl if ttl else None
        with self._lock:
            self._store[key] = (value, expires_at)
            self._store.move_to_end(key)
            while len(self._store) > self.max_entries:
                self._store.popitem(last=False)

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._store.pop(key, None) is not None:
                    removed += 1
        return removed

    async def keys(self, pattern: str) -> List[str]:
        with self._lock:
            return [
                k for k, (_, exp) in self._store.items()
                if fnmatch.fnmatchcase(k, pattern) and not self._expired(exp)
            ]

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._store.clear()


class RedisBackend:
    """Redis 缓存后端 (redis.asyncio)"""

    name = "redis"

    def __init__(self, url: str):
        import redis.asyncio as redis_asyncio

        self.url = url
        self._client = redis_asyncio.from_url(url, decode_responses=True)

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(key)

    async def set(self, key: str, value: str, ttl: Optional[int]) -> None:
        if ttl:
            await self._client.set(key, value, ex=max(int(ttl), 1))
        else:
            await self._client.set(key, value)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._client.delete(*keys))

    async def keys(self, pattern: str) -> List[str]:
        return [key async for key in self._client.scan_iter(match=pattern, count=500)]

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def close(self) -> None:
        await self._client.aclose()


class ResultCache:
    """
    结果缓存

    所有方法都不会抛出异常：后端故障时 get 返回 None，写操作返回 False/0。
    """

    def __init__(self, backend=None):
        self._backend = backend or MemoryBackend(settings.CACHE_MAX_ENTRIES)
        self._stats = {
            "hits": 0,
            "misses": 0,
            "sets": 0,
            "deletes": 0,
            "errors": 0,
        }
        self._last_error: Optional[str] = None

    @property
    def backend_name(self) -> str:
        return self._backend.name

    @property
    def enabled(self) -> bool:
        return self._backend.name == "redis"

    def use_backend(self, backend) -> None:
        self._backend = backend

    async def connect(self) -> None:
        """按配置选择后端；Redis 不可用时退回进程内缓存"""
        if not settings.REDIS_ENABLED:
            logger.info("Redis 未启用，使用进程内缓存")
            return
        try:
            backend = RedisBackend(settings.REDIS_URL)
            await backend.ping()
            self._backend = backend
            logger.info(f"✅ Redis 缓存已连接: {settings.REDIS_URL}")
        except Exception as e:
            self._record_error("connect", e)
            logger.warning("Redis 连接失败，使用进程内缓存")

    def _record_error(self, op: str, error: Exception) -> None:
        self._stats["errors"] += 1
        self._last_error = f"{op}: {error}"
        logger.warning(f"缓存操作失败 ({op}): {error}")

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self._backend.get(key)
        except Exception as e:
            self._record_error("get", e)
            self._stats["misses"] += 1
            return None
        if raw is None:
            self._stats["misses"] += 1
            return None
        try:
            value = json.loads(raw)
        except (TypeError, ValueError) as e:
            self._record_error("decode", e)
            self._stats["misses"] += 1
            return None
        self._stats["hits"] += 1
        return value

    async def set_ex(self, key: str, value: Any, ttl: int) -> bool:
        if ttl is not None and ttl <= 0:
            return False
        try:
            payload = json.dumps(value, default=str)
            await self._backend.set(key, payload, ttl)
        except Exception as e:
            self._record_error("set", e)
            return False
        self._stats["sets"] += 1
        return True

    async def delete(self, key: str) -> bool:
        try:
            removed = await self._backend.delete(key)
        except Exception as e:
            self._record_error("delete", e)
            return False
        self._stats["deletes"] += removed
        return removed > 0

    async def invalidate_prefix(self, pattern: str) -> int:
        """
        按模式失效缓存

        Args:
            pattern: 如 ``pulse:query:12:*``；不含通配符时按前缀处理

        Returns:
            删除的键数量
        """
        if "*" not in pattern:
            pattern = f"{pattern}*"
        try:
            keys = await self._backend.keys(pattern)
            removed = await self._backend.delete(*keys) if keys else 0
        except Exception as e:
            self._record_error("invalidate", e)
            return 0
        self._stats["deletes"] += removed
        if removed:
            logger.debug(f"缓存失效: pattern={pattern}, removed={removed}")
        return removed

    async def invalidate_entity(self, kind: str, entity_id: Union[int, str]) -> int:
        """失效某个实体的全部缓存（含带后缀的键）"""
        base = cache_key(kind, entity_id)
        removed = 0
        if await self.delete(base):
            removed += 1
        removed += await self.invalidate_prefix(f"{base}:*")
        return removed

    async def flush(self, pattern: Optional[str] = None) -> int:
        return await self.invalidate_prefix(pattern or f"{KEY_PREFIX}:*")

    def stats(self) -> Dict[str, Any]:
        lookups = self._stats["hits"] + self._stats["misses"]
        return {
            "backend": self._backend.name,
            **self._stats,
            "hitRate": round(self._stats["hits"] / lookups, 4) if lookups else 0.0,
            "lastError": self._last_error,
        }

    async def health(self) -> Dict[str, Any]:
        try:
            connected = bool(await self._backend.ping())
        except Exception as e:
            self._record_error("ping", e)
            connected = False
        return {
            "enabled": self.enabled,
            "connected": connected,
            "healthy": connected,
        }

    async def close(self) -> None:
        try:
            await self._backend.close()
        except Exception as e:
            self._record_error("close", e)


# 全局实例
result_cache = ResultCache()

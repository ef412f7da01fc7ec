"""
结果缓存的单元测试
测试键格式、TTL、LRU 淘汰、前缀失效以及后端故障时的降级行为
"""
import time

import pytest

from pulse.services.cache_service import MemoryBackend, ResultCache, cache_key


class FailingBackend:
    """所有操作都失败的后端"""

    name = "redis"

    async def get(self, key):
        raise ConnectionError("redis down")

    async def set(self, key, value, ttl):
        raise ConnectionError("redis down")

    async def delete(self, *keys):
        raise ConnectionError("redis down")

    async def keys(self, pattern):
        raise ConnectionError("redis down")

    async def ping(self):
        raise ConnectionError("redis down")

    async def close(self):
        raise ConnectionError("redis down")


class TestCacheKey:
    """测试缓存键"""

    def test_key_format(self):
        assert cache_key("query", 12) == "pulse:query:12"
        assert cache_key("query", 12, "abc") == "pulse:query:12:abc"

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            cache_key("session", 1)


class TestResultCache:
    """测试进程内缓存"""

    @pytest.mark.asyncio
    async def test_set_and_get_round_trip(self):
        cache = ResultCache(MemoryBackend(10))
        assert await cache.set_ex("pulse:query:1:a", {"rows": [{"a": 1}]}, 60)
        assert await cache.get("pulse:query:1:a") == {"rows": [{"a": 1}]}
        stats = cache.stats()
        assert stats["hits"] == 1
        assert stats["sets"] == 1
        assert stats["backend"] == "memory"

    @pytest.mark.asyncio
    async def test_non_positive_ttl_not_stored(self):
        cache = ResultCache(MemoryBackend(10))
        assert await cache.set_ex("pulse:query:1", 1, 0) is False
        assert await cache.get("pulse:query:1") is None

    @pytest.mark.asyncio
    async def test_entry_expires(self):
        backend = MemoryBackend(10)
        cache = ResultCache(backend)
        await cache.set_ex("pulse:dataset:1", "x", 5)
        assert await cache.get("pulse:dataset:1") == "x"

        value, _ = backend._store["pulse:dataset:1"]
        backend._store["pulse:dataset:1"] = (value, time.monotonic() - 1)
        assert await cache.get("pulse:dataset:1") is None
        assert await backend.keys("pulse:*") == []

    @pytest.mark.asyncio
    async def test_lru_eviction(self):
        cache = ResultCache(MemoryBackend(2))
        await cache.set_ex("pulse:query:1", 1, 60)
        await cache.set_ex("pulse:query:2", 2, 60)
        # 访问 1 之后 2 成为最久未使用
        await cache.get("pulse:query:1")
        await cache.set_ex("pulse:query:3", 3, 60)
        assert await cache.get("pulse:query:2") is None
        assert await cache.get("pulse:query:1") == 1
        assert await cache.get("pulse:query:3") == 3

    @pytest.mark.asyncio
    async def test_invalidate_prefix(self):
        cache = ResultCache(MemoryBackend(10))
        await cache.set_ex("pulse:query:1:a", 1, 60)
        await cache.set_ex("pulse:query:1:b", 2, 60)
        await cache.set_ex("pulse:query:12:a", 3, 60)
        removed = await cache.invalidate_prefix("pulse:query:1:*")
        assert removed == 2
        assert await cache.get("pulse:query:12:a") == 3

    @pytest.mark.asyncio
    async def test_invalidate_entity_includes_base_key(self):
        cache = ResultCache(MemoryBackend(10))
        await cache.set_ex("pulse:dashboard:4", {"items": []}, 60)
        await cache.set_ex("pulse:dashboard:4:v2", {"items": []}, 60)
        await cache.set_ex("pulse:dashboard:40", {"items": []}, 60)
        assert await cache.invalidate_entity("dashboard", 4) == 2
        assert await cache.get("pulse:dashboard:40") is not None

    @pytest.mark.asyncio
    async def test_flush(self):
        cache = ResultCache(MemoryBackend(10))
        await cache.set_ex("pulse:query:1", 1, 60)
        await cache.set_ex("pulse:report:1", 1, 60)
        assert await cache.flush() == 2
        assert await cache.get("pulse:report:1") is None


class TestBackendFailure:
    """后端故障时所有操作都不抛异常"""

    @pytest.mark.asyncio
    async def test_operations_degrade(self):
        cache = ResultCache(FailingBackend())
        assert await cache.get("pulse:query:1") is None
        assert await cache.set_ex("pulse:query:1", 1, 60) is False
        assert await cache.delete("pulse:query:1") is False
        assert await cache.invalidate_prefix("pulse:query:1") == 0
        assert await cache.invalidate_entity("query", 1) == 0
        await cache.close()

        stats = cache.stats()
        assert stats["errors"] >= 5
        assert "redis down" in stats["lastError"]

    @pytest.mark.asyncio
    async def test_health_reports_unhealthy(self):
        cache = ResultCache(FailingBackend())
        health = await cache.health()
        assert health == {"enabled": True, "connected": False, "healthy": False}

# The module provides the key-value cache used for chunk buffers and memoization.
# Date: 2026-10-18
# Version: 0.2.0

import inspect
import json
import time
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union

from redis.asyncio import Redis, from_url
from redis.exceptions import RedisError

from grounded_agent.core.config import get_settings
from grounded_agent.utils.logger import console


class CacheStats:
    """Process-scoped hit/miss counters. Observability only, never used for control flow."""

    def __init__(self):
        self.hits = 0
        self.misses = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def as_dict(self) -> Dict[str, Any]:
        return {"hits": self.hits, "misses": self.misses, "hit_rate": round(self.hit_rate, 4)}


cache_stats = CacheStats()


def reset_cache_stats():
    cache_stats.hits = 0
    cache_stats.misses = 0


class CacheBackend(ABC):
    """Raw string storage with per-key expiry."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[int] = None):
        ...

    @abstractmethod
    async def delete(self, key: str):
        ...

    @abstractmethod
    async def exists(self, key: str) -> bool:
        ...

    async def close(self):
        pass


class InMemoryCacheBackend(CacheBackend):
    """
    Single-process backend. Expiry is checked against the monotonic clock on
    reads, and writes sweep out every expired entry at most once per
    `sweep_interval` seconds so abandoned keys do not accumulate.
    """

    def __init__(self, sweep_interval: float = 1.0):
        self._store: Dict[str, Tuple[str, Optional[float]]] = {}
        self.sweep_interval = sweep_interval
        self._last_sweep = 0.0

    @property
    def size(self) -> int:
        return len(self._store)

    def _sweep(self, now: float):
        if now - self._last_sweep < self.sweep_interval:
            return
        self._last_sweep = now
        expired = [key for key, (_, expires_at) in self._store.items() if expires_at is not None and now >= expires_at]
        for key in expired:
            del self._store[key]

    def _live(self, key: str) -> Optional[str]:
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and time.monotonic() >= expires_at:
            del self._store[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def set(self, key: str, value: str, ttl: Optional[int] = None):
        now = time.monotonic()
        self._sweep(now)
        expires_at = now + ttl if ttl else None
        self._store[key] = (value, expires_at)

    async def delete(self, key: str):
        self._store.pop(key, None)

    async def exists(self, key: str) -> bool:
        return self._live(key) is not None


class RedisCacheBackend(CacheBackend):
    """Shared backend for multi-process deployments (API and Celery workers)."""

    def __init__(self, url: Optional[str] = None, client: Optional[Redis] = None):
        self._client = client or from_url(url or get_settings().REDIS_URL, decode_responses=True)
        console.info("Async Redis client for the cache initialized.")

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(key)

    async def set(self, key: str, value: str, ttl: Optional[int] = None):
        await self._client.set(key, value, ex=ttl or None)

    async def delete(self, key: str):
        await self._client.delete(key)

    async def exists(self, key: str) -> bool:
        return bool(await self._client.exists(key))

    async def close(self):
        await self._client.aclose()


Factory = Callable[[], Union[Any, Awaitable[Any]]]


class CacheService:
    """
    JSON-valued cache over a backend. Keys are namespaced; a failing backend is
    logged and degrades to a miss on reads and to False on writes.
    """

    def __init__(self, backend: CacheBackend, namespace: str = "", default_ttl: Optional[int] = None):
        self.backend = backend
        self.namespace = namespace
        self.default_ttl = default_ttl

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}" if self.namespace else key

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self.backend.get(self._key(key))
        except (RedisError, OSError) as e:
            console.error(f"Cache get failed for '{key}': {e}")
            cache_stats.misses += 1
            return None

        if raw is None:
            cache_stats.misses += 1
            return None
        cache_stats.hits += 1
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            console.warning(f"Cache entry '{key}' is not valid JSON; treating as a miss.")
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        try:
            payload = json.dumps(value, default=str)
            await self.backend.set(self._key(key), payload, ttl if ttl is not None else self.default_ttl)
            return True
        except (TypeError, ValueError, RedisError, OSError) as e:
            console.error(f"Cache set failed for '{key}': {e}")
            return False

    async def delete(self, key: str) -> bool:
        try:
            await self.backend.delete(self._key(key))
            return True
        except (RedisError, OSError) as e:
            console.error(f"Cache delete failed for '{key}': {e}")
            return False

    async def exists(self, key: str) -> bool:
        try:
            return await self.backend.exists(self._key(key))
        except (RedisError, OSError) as e:
            console.error(f"Cache exists failed for '{key}': {e}")
            return False

    async def get_or_set(self, key: str, factory: Factory, ttl: Optional[int] = None) -> Any:
        """Returns the cached value, or computes it with `factory` (sync or async) and stores it."""
        cached = await self.get(key)
        if cached is not None:
            return cached
        value = factory()
        if inspect.isawaitable(value):
            value = await value
        if value is not None:
            await self.set(key, value, ttl)
        return value

    async def close(self):
        await self.backend.close()


def create_backend(kind: str) -> CacheBackend:
    if kind == "redis":
        return RedisCacheBackend()
    if kind == "memory":
        return InMemoryCacheBackend()
    raise ValueError(f"Unknown cache backend '{kind}'. Use 'memory' or 'redis'.")


@lru_cache
def get_cache() -> CacheService:
    settings = get_settings()
    return CacheService(
        create_backend(settings.CACHE_BACKEND),
        namespace=settings.CACHE_NAMESPACE,
        default_ttl=settings.CACHE_DEFAULT_TTL,
    )

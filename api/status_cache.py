"""
Short-TTL read-through cache for job status, asset lists and aggregate stats.

Provides two backends:
- MemoryCacheBackend: per-process dict, for single-process deployments
- RedisCacheBackend: shared across API instances and workers

StatusCache sits on top of either one. A backend that fails behaves like an
empty cache: the loader runs and the request is served from the repository.

Use create_status_cache() to get the configured instance.
"""

import json
import logging
import random
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from api.metrics import CACHE_HITS, CACHE_MISSES
from api.redis_client import RedisClient, redis_key
from config import (
    CACHE_ASSETS_TTL,
    CACHE_JOB_TTL,
    CACHE_PROCESSING_TTL,
    CACHE_STATS_TTL,
    JOB_QUEUE_MODE,
    STATUS_CACHE_ENABLED,
    STATUS_CACHE_MAX_SIZE,
)

logger = logging.getLogger(__name__)

Loader = Callable[[], Awaitable[Any]]


def job_key(job_id: int) -> str:
    return f"job:{job_id}:status"


def assets_key(job_id: int) -> str:
    return f"job:{job_id}:assets"


def owner_stats_key(owner_id: str) -> str:
    return f"owner:{owner_id}:stats"


PROCESSING_STATUS_KEY = "processing:status"


class MemoryCacheBackend:
    """
    In-process cache with per-entry TTL.

    Note: each process has its own copy, so this is only correct when the
    API process is also the only writer (JOB_QUEUE_MODE=memory).
    """

    CLEANUP_PROBABILITY = 0.01  # 1% chance of a full expiry sweep on set

    def __init__(self, max_size: int = STATUS_CACHE_MAX_SIZE):
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._max_size = max_size

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if time.monotonic() >= entry["expires_at"]:
            self._entries.pop(key, None)
            return None
        return entry["data"]

    async def set(self, key: str, value: Any, ttl: float) -> None:
        if random.random() < self.CLEANUP_PROBABILITY:
            self.cleanup_expired()

        if key not in self._entries and len(self._entries) >= self._max_size:
            self.cleanup_expired()
            if len(self._entries) >= self._max_size:
                # Still full: drop the oldest 10%
                oldest = sorted(self._entries.items(), key=lambda item: item[1]["stored_at"])
                for k, _ in oldest[: max(1, len(oldest) // 10)]:
                    del self._entries[k]

        now = time.monotonic()
        self._entries[key] = {"data": value, "stored_at": now, "expires_at": now + ttl}

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._entries.pop(key, None)

    def cleanup_expired(self) -> int:
        now = time.monotonic()
        expired = [k for k, entry in self._entries.items() if now >= entry["expires_at"]]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def clear(self) -> None:
        self._entries.clear()

    def get_stats(self) -> Dict[str, Any]:
        return {"backend": "memory", "entry_count": len(self._entries), "max_size": self._max_size}


class RedisCacheBackend:
    """JSON values under {prefix}:cache:<key> with SETEX; failures become misses."""

    def __init__(self, client: Optional[RedisClient] = None):
        self._client = client

    async def _redis(self) -> RedisClient:
        if self._client is None:
            self._client = await RedisClient.get_instance()
        return self._client

    @staticmethod
    def _full_key(key: str) -> str:
        return redis_key("cache", key)

    async def get(self, key: str) -> Optional[Any]:
        client = await self._redis()
        raw = await client.run(lambda r: r.get(self._full_key(key)), description="cache get")
        return None if raw is None else json.loads(raw)

    async def set(self, key: str, value: Any, ttl: float) -> None:
        client = await self._redis()
        payload = json.dumps(value)
        await client.run(
            lambda r: r.setex(self._full_key(key), max(1, int(ttl)), payload),
            description="cache set",
        )

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        client = await self._redis()
        full_keys = [self._full_key(k) for k in keys]
        await client.run(lambda r: r.delete(*full_keys), description="cache delete")

    async def clear(self) -> None:
        client = await self._redis()

        async def _clear(r):
            async for key in r.scan_iter(match=self._full_key("*"), count=100):
                await r.delete(key)

        await client.run(_clear, description="cache clear")

    def get_stats(self) -> Dict[str, Any]:
        return {"backend": "redis"}


CacheBackend = Union[MemoryCacheBackend, RedisCacheBackend]


class StatusCache:
    """
    Read-through cache in front of JobRepository reads.

    Values must be JSON-safe (callers pass model_dump(mode="json") output) so
    both backends hand back identical shapes.
    """

    def __init__(self, backend: Optional[CacheBackend] = None, enabled: bool = STATUS_CACHE_ENABLED):
        self._backend = backend if backend is not None else MemoryCacheBackend()
        self._enabled = enabled

    async def _read_through(self, key: str, ttl: float, loader: Loader) -> Any:
        if not self._enabled:
            return await loader()

        try:
            cached = await self._backend.get(key)
        except Exception as e:
            logger.warning(f"Status cache read failed for {key}: {e}")
            cached = None

        if cached is not None:
            CACHE_HITS.labels(kind=key.split(":")[0]).inc()
            return cached

        CACHE_MISSES.labels(kind=key.split(":")[0]).inc()
        value = await loader()
        if value is not None:
            try:
                await self._backend.set(key, value, ttl)
            except Exception as e:
                logger.warning(f"Status cache write failed for {key}: {e}")
        return value

    async def get_job(self, job_id: int, loader: Loader) -> Any:
        return await self._read_through(job_key(job_id), CACHE_JOB_TTL, loader)

    async def get_assets(self, job_id: int, loader: Loader) -> Any:
        return await self._read_through(assets_key(job_id), CACHE_ASSETS_TTL, loader)

    async def get_owner_stats(self, owner_id: str, loader: Loader) -> Any:
        return await self._read_through(owner_stats_key(owner_id), CACHE_STATS_TTL, loader)

    async def get_processing_status(self, loader: Loader) -> Any:
        return await self._read_through(PROCESSING_STATUS_KEY, CACHE_PROCESSING_TTL, loader)

    async def _delete(self, *keys: str) -> None:
        if not self._enabled:
            return
        try:
            await self._backend.delete(*keys)
        except Exception as e:
            logger.warning(f"Status cache invalidation failed for {keys}: {e}")

    async def invalidate_job(self, job_id: int, owner_id: Optional[str] = None) -> None:
        """Drop everything derived from one job: its status, assets, owner stats, system view."""
        keys = [job_key(job_id), assets_key(job_id), PROCESSING_STATUS_KEY]
        if owner_id is not None:
            keys.append(owner_stats_key(owner_id))
        await self._delete(*keys)

    async def invalidate_owner(self, owner_id: str) -> None:
        await self._delete(owner_stats_key(owner_id), PROCESSING_STATUS_KEY)

    async def invalidate_processing(self) -> None:
        await self._delete(PROCESSING_STATUS_KEY)

    def get_stats(self) -> Dict[str, Any]:
        return {"enabled": self._enabled, **self._backend.get_stats()}


def create_status_cache(mode: str = JOB_QUEUE_MODE, enabled: bool = STATUS_CACHE_ENABLED) -> StatusCache:
    """
    Pick the backend matching the deployment.

    With separate worker processes (redis mode) the cache must be shared,
    otherwise worker-side invalidations would never reach the API.
    """
    if mode == "redis":
        return StatusCache(RedisCacheBackend(), enabled=enabled)
    return StatusCache(MemoryCacheBackend(), enabled=enabled)

"""
Shared Redis connection for the queue, the status cache and scheduler snapshots.

One async pool per process. A circuit breaker stops hammering a dead server:
after three consecutive failures Redis is reported unavailable for an
exponentially growing window, and callers degrade instead of raising.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from config import (
    REDIS_HEALTH_CHECK_INTERVAL,
    REDIS_KEY_PREFIX,
    REDIS_POOL_SIZE,
    REDIS_SOCKET_CONNECT_TIMEOUT,
    REDIS_SOCKET_TIMEOUT,
    REDIS_URL,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

CIRCUIT_FAILURE_THRESHOLD = 3
CIRCUIT_BASE_BACKOFF = 30
CIRCUIT_MAX_BACKOFF = 300


def redis_key(*parts: Any) -> str:
    """Build a namespaced key, e.g. redis_key("scheduler", "w1") -> "vforge:scheduler:w1"."""
    return ":".join([REDIS_KEY_PREFIX, *(str(p) for p in parts)])


def circuit_backoff_seconds(consecutive_failures: int) -> int:
    """Open-circuit window: 30s, 60s, 120s, 240s, then capped at 300s."""
    exponent = max(0, consecutive_failures - CIRCUIT_FAILURE_THRESHOLD)
    return min(CIRCUIT_MAX_BACKOFF, CIRCUIT_BASE_BACKOFF * (2**exponent))


class RedisClient:
    """Process-wide Redis client with pooling and a circuit breaker."""

    _instance: Optional["RedisClient"] = None
    _lock: Optional[asyncio.Lock] = None

    def __init__(self, url: str = REDIS_URL) -> None:
        self.url = url
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None
        self._connected = False
        self._healthy = False
        self._last_health_check: Optional[datetime] = None
        self.consecutive_failures = 0
        self._circuit_open_until: Optional[datetime] = None

    @classmethod
    def _get_lock(cls) -> asyncio.Lock:
        """Return the class lock, recreating it if it belongs to another event loop."""
        if cls._lock is None:
            cls._lock = asyncio.Lock()
            return cls._lock
        try:
            current_loop = asyncio.get_running_loop()
            lock_loop = getattr(cls._lock, "_loop", None)
            if lock_loop is not None and lock_loop is not current_loop:
                cls._lock = asyncio.Lock()
        except RuntimeError:
            cls._lock = asyncio.Lock()
        return cls._lock

    @classmethod
    async def get_instance(cls) -> "RedisClient":
        async with cls._get_lock():
            if cls._instance is None:
                cls._instance = cls()
            if not cls._instance._connected:
                await cls._instance.connect()
            return cls._instance

    @classmethod
    async def reset_instance(cls) -> None:
        """Drop the singleton (tests, shutdown)."""
        async with cls._get_lock():
            if cls._instance is not None:
                await cls._instance.close()
                cls._instance = None

    async def connect(self) -> None:
        """Build the pool and ping once. A failed ping leaves the client unhealthy, not broken."""
        self._connected = True
        if not self.url:
            logger.info("VFORGE_REDIS_URL not set, Redis-backed features disabled")
            return

        try:
            self._pool = ConnectionPool.from_url(
                self.url,
                max_connections=REDIS_POOL_SIZE,
                socket_timeout=REDIS_SOCKET_TIMEOUT,
                socket_connect_timeout=REDIS_SOCKET_CONNECT_TIMEOUT,
                retry_on_error=[RedisConnectionError],
                decode_responses=True,
            )
            self._client = Redis(connection_pool=self._pool)
            await self._client.ping()
            self._healthy = True
            self._last_health_check = datetime.now(timezone.utc)
            logger.info(f"Connected to Redis at {self.url.split('@')[-1]}")
        except Exception as e:
            logger.warning(f"Could not connect to Redis: {e}")
            self._healthy = False

    @property
    def is_configured(self) -> bool:
        return bool(self.url)

    @property
    def circuit_open(self) -> bool:
        if self._circuit_open_until is None:
            return False
        if datetime.now(timezone.utc) < self._circuit_open_until:
            return True
        # Window elapsed: let the next call probe the server
        self._circuit_open_until = None
        self._healthy = True
        logger.info("Redis circuit breaker half-open, retrying connection")
        return False

    @property
    def is_available(self) -> bool:
        if self._client is None:
            return False
        if self.circuit_open:
            return False
        return self._healthy

    async def get_client(self) -> Optional[Redis]:
        """The raw client, or None while Redis is unconfigured, down, or circuit-broken."""
        if not self.is_available:
            return None
        return self._client

    def record_failure(self, error: Optional[BaseException] = None) -> None:
        self.consecutive_failures += 1
        self._healthy = False
        if self.consecutive_failures >= CIRCUIT_FAILURE_THRESHOLD:
            backoff = circuit_backoff_seconds(self.consecutive_failures)
            self._circuit_open_until = datetime.now(timezone.utc) + timedelta(seconds=backoff)
            logger.warning(
                f"Redis circuit breaker open for {backoff}s after {self.consecutive_failures} failures"
                + (f": {error}" if error else "")
            )

    def record_success(self) -> None:
        if self.consecutive_failures > 0:
            logger.info(f"Redis recovered after {self.consecutive_failures} failures")
        self.consecutive_failures = 0
        self._healthy = True
        self._circuit_open_until = None

    async def run(
        self,
        operation: Callable[[Redis], Awaitable[T]],
        default: Optional[T] = None,
        description: str = "operation",
    ) -> Optional[T]:
        """
        Run operation(client) and feed the outcome into the circuit breaker.

        Args:
            operation: Coroutine function taking the Redis client
            default: Returned when Redis is unavailable or the call fails
            description: Used in the warning log on failure

        Returns:
            The operation's result, or default.
        """
        client = await self.get_client()
        if client is None:
            return default
        try:
            result = await operation(client)
        except (RedisError, OSError) as e:
            logger.warning(f"Redis {description} failed: {e}")
            self.record_failure(e)
            return default
        self.record_success()
        return result

    async def health_check(self) -> bool:
        """Ping, at most once per REDIS_HEALTH_CHECK_INTERVAL."""
        if self._client is None:
            return False

        if self._last_health_check:
            elapsed = (datetime.now(timezone.utc) - self._last_health_check).total_seconds()
            if elapsed < REDIS_HEALTH_CHECK_INTERVAL:
                return self.is_available

        self._last_health_check = datetime.now(timezone.utc)
        try:
            await self._client.ping()
        except Exception as e:
            logger.warning(f"Redis health check failed: {e}")
            self.record_failure(e)
            return False
        self.record_success()
        return True

    async def close(self) -> None:
        if self._client is not None:
            try:
                await self._client.aclose()
            except Exception as e:
                logger.debug(f"Ignoring error while closing Redis client: {e}")
        if self._pool is not None:
            try:
                await self._pool.disconnect()
            except Exception as e:
                logger.debug(f"Ignoring error while disconnecting Redis pool: {e}")
        self._client = None
        self._pool = None
        self._healthy = False
        self._connected = False


async def get_redis() -> Optional[Redis]:
    """Shared client if Redis is usable right now, else None."""
    client = await RedisClient.get_instance()
    return await client.get_client()


async def redis_health() -> str:
    """One-word Redis state for health views: disabled, ok or unavailable."""
    client = await RedisClient.get_instance()
    if not client.is_configured:
        return "disabled"
    return "ok" if await client.health_check() else "unavailable"

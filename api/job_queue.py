"""
Durable job queue used between admission and the scheduler.

Two backends with the same interface (publish / receive / ack / reject):
- memory: in-process FIFO, for single-process deployments where the API
  runs the scheduler itself
- redis: Redis Streams consumer group, for separate worker processes

Both give at-least-once delivery with visibility-timeout semantics: a
received message that is never acknowledged becomes deliverable again.
Duplicates are harmless because the pipeline only claims PENDING jobs.
"""

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Deque, Dict, List, Optional, Tuple, Union

from api.errors import QueueingError
from api.redis_client import get_redis, redis_key
from config import (
    JOB_QUEUE_MODE,
    QUEUE_VISIBILITY_TIMEOUT,
    REDIS_CONSUMER_GROUP,
    REDIS_PENDING_TIMEOUT_MS,
    REDIS_STREAM_MAX_LEN,
)

logger = logging.getLogger(__name__)

JOB_STREAM = redis_key("jobs")
DEAD_LETTER_STREAM = redis_key("jobs", "dead-letter")
DEAD_LETTER_MAX_LEN = 1000


@dataclass
class JobMessage:
    """Queue entry: which job to run and with which formats."""

    job_id: int
    requested_formats: List[str]
    enqueued_at: Optional[datetime] = None
    attempt: int = 1
    # Internal: backend delivery handle used by ack/reject
    _message_id: Optional[str] = field(default=None, repr=False)

    def to_stream_dict(self) -> dict:
        """Flatten to Redis stream fields (all strings)."""
        return {
            "job_id": str(self.job_id),
            "requested_formats": ",".join(self.requested_formats),
            "enqueued_at": (self.enqueued_at or datetime.now(timezone.utc)).isoformat(),
        }

    @classmethod
    def from_stream_dict(cls, data: dict, message_id: Optional[str] = None, attempt: int = 1) -> "JobMessage":
        enqueued_at = None
        if data.get("enqueued_at"):
            try:
                enqueued_at = datetime.fromisoformat(data["enqueued_at"])
            except (ValueError, TypeError):
                pass

        message = cls(
            job_id=int(data["job_id"]),
            requested_formats=[f for f in data.get("requested_formats", "").split(",") if f],
            enqueued_at=enqueued_at,
            attempt=attempt,
        )
        message._message_id = message_id
        return message


class InMemoryJobQueue:
    """
    asyncio FIFO with an in-flight table.

    receive() moves a message from ready to in-flight with a deadline; ack()
    removes it. An in-flight message past its deadline goes back to the head
    of the ready queue with attempt + 1.
    """

    backend = "memory"

    def __init__(self, visibility_timeout: float = QUEUE_VISIBILITY_TIMEOUT):
        self._visibility_timeout = visibility_timeout
        self._ready: Deque[JobMessage] = deque()
        self._in_flight: Dict[str, Tuple[JobMessage, float]] = {}
        self._ids = itertools.count(1)
        self._cond: Optional[asyncio.Condition] = None
        self.dead_letters: List[Tuple[JobMessage, str]] = []

    def _condition(self) -> asyncio.Condition:
        # Created lazily so the queue can be built outside a running loop
        if self._cond is None:
            self._cond = asyncio.Condition()
        return self._cond

    async def initialize(self, consumer_name: str = "local") -> None:
        logger.info(f"Job queue: in-process FIFO (consumer: {consumer_name})")

    async def publish(self, message: JobMessage) -> None:
        if message.enqueued_at is None:
            message.enqueued_at = datetime.now(timezone.utc)
        message._message_id = str(next(self._ids))
        async with self._condition():
            self._ready.append(message)
            self._condition().notify()
        logger.debug(f"Queued job {message.job_id} (message {message._message_id})")

    def _requeue_expired(self, now: float) -> None:
        expired = [mid for mid, (_, deadline) in self._in_flight.items() if deadline <= now]
        for message_id in expired:
            message, _ = self._in_flight.pop(message_id)
            message.attempt += 1
            self._ready.appendleft(message)
            logger.info(f"Job {message.job_id} not acknowledged in time, redelivering (attempt {message.attempt})")

    def _next_expiry(self) -> Optional[float]:
        if not self._in_flight:
            return None
        return min(deadline for _, deadline in self._in_flight.values())

    async def receive(self, timeout: float) -> Optional[JobMessage]:
        """Wait up to timeout seconds for a message; None if nothing arrived."""
        loop = asyncio.get_running_loop()
        give_up_at = loop.time() + timeout
        cond = self._condition()

        async with cond:
            while True:
                now = loop.time()
                self._requeue_expired(now)
                if self._ready:
                    message = self._ready.popleft()
                    self._in_flight[message._message_id] = (message, now + self._visibility_timeout)
                    return message

                remaining = give_up_at - now
                if remaining <= 0:
                    return None
                next_expiry = self._next_expiry()
                if next_expiry is not None:
                    remaining = min(remaining, max(0.0, next_expiry - now))
                try:
                    await asyncio.wait_for(cond.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    pass

    async def ack(self, message: JobMessage) -> None:
        async with self._condition():
            self._in_flight.pop(message._message_id, None)

    async def reject(self, message: JobMessage, error: str) -> None:
        await self.ack(message)
        self.dead_letters.append((message, error[:500]))
        logger.info(f"Job {message.job_id} moved to dead letters: {error[:100]}")

    def pending_count(self) -> int:
        """Messages waiting for a consumer (in-flight ones excluded)."""
        return len(self._ready)

    async def refresh_backlog(self) -> int:
        return self.pending_count()

    async def get_queue_stats(self) -> dict:
        return {
            "backend": self.backend,
            "available": True,
            "queued": len(self._ready),
            "in_flight": len(self._in_flight),
            "dead_letter_queue": len(self.dead_letters),
        }

    async def close(self) -> None:
        pass


class RedisJobQueue:
    """Redis Streams backend: one stream, one consumer group, one dead-letter stream."""

    backend = "redis"

    def __init__(self, pending_timeout_ms: int = REDIS_PENDING_TIMEOUT_MS):
        self._pending_timeout_ms = pending_timeout_ms
        self._consumer_name: Optional[str] = None
        self._initialized = False
        self._backlog = 0

    async def initialize(self, consumer_name: str) -> None:
        """Create the consumer group if needed. consumer_name identifies this worker."""
        self._consumer_name = consumer_name
        redis = await get_redis()
        if not redis:
            logger.warning("Redis unavailable, job queue not initialized; jobs will wait until it returns")
            return

        try:
            await redis.xgroup_create(JOB_STREAM, REDIS_CONSUMER_GROUP, id="0", mkstream=True)
            logger.info(f"Created consumer group {REDIS_CONSUMER_GROUP} on {JOB_STREAM}")
        except Exception as e:
            if "BUSYGROUP" not in str(e):
                logger.warning(f"Failed to create consumer group: {e}")
                return
        self._initialized = True
        logger.info(f"Job queue: Redis Streams (consumer: {consumer_name})")

    async def publish(self, message: JobMessage) -> None:
        """XADD the message. Raises QueueingError if Redis refuses or is down."""
        redis = await get_redis()
        if not redis:
            raise QueueingError("Job queue unavailable")
        try:
            message._message_id = await redis.xadd(JOB_STREAM, message.to_stream_dict(), maxlen=REDIS_STREAM_MAX_LEN)
        except Exception as e:
            logger.warning(f"Failed to publish job {message.job_id}: {e}")
            raise QueueingError("Job queue unavailable") from e
        logger.debug(f"Published job {message.job_id} to {JOB_STREAM}")

    async def receive(self, timeout: float) -> Optional[JobMessage]:
        """Reclaim an abandoned message if there is one, else block on XREADGROUP."""
        if not self._consumer_name:
            raise RuntimeError("RedisJobQueue.receive() called before initialize()")

        redis = await get_redis()
        if not redis:
            # Don't spin while the circuit breaker is open
            await asyncio.sleep(timeout)
            return None

        if not self._initialized:
            await self.initialize(self._consumer_name)
            if not self._initialized:
                await asyncio.sleep(timeout)
                return None

        try:
            recovered = await self._recover_abandoned_message(redis)
            if recovered:
                return recovered
            return await self._read_new_message(redis, timeout)
        except Exception as e:
            logger.warning(f"Redis receive failed: {e}")
            await asyncio.sleep(timeout)
            return None

    async def _recover_abandoned_message(self, redis) -> Optional[JobMessage]:
        """XCLAIM the first pending message idle longer than the pending timeout."""
        pending = await redis.xpending_range(JOB_STREAM, REDIS_CONSUMER_GROUP, min="-", max="+", count=10)
        for entry in pending:
            idle_ms = entry.get("time_since_delivered", 0)
            if idle_ms <= self._pending_timeout_ms:
                continue
            claimed = await redis.xclaim(
                JOB_STREAM,
                REDIS_CONSUMER_GROUP,
                self._consumer_name,
                self._pending_timeout_ms,
                [entry["message_id"]],
            )
            if claimed:
                message_id, data = claimed[0]
                attempt = int(entry.get("times_delivered", 1)) + 1
                logger.info(f"Reclaimed job {data.get('job_id')} idle for {idle_ms}ms (attempt {attempt})")
                return JobMessage.from_stream_dict(data, message_id=message_id, attempt=attempt)
        return None

    async def _read_new_message(self, redis, timeout: float) -> Optional[JobMessage]:
        messages = await redis.xreadgroup(
            REDIS_CONSUMER_GROUP,
            self._consumer_name,
            {JOB_STREAM: ">"},
            count=1,
            block=max(1, int(timeout * 1000)),
        )
        if not messages:
            return None
        # [[stream_name, [(message_id, fields), ...]]]
        _, entries = messages[0]
        if not entries:
            return None
        message_id, data = entries[0]
        return JobMessage.from_stream_dict(data, message_id=message_id)

    async def ack(self, message: JobMessage) -> None:
        if not message._message_id:
            return
        redis = await get_redis()
        if not redis:
            # Unacked messages get reclaimed later; the claim guard makes that a no-op
            logger.warning(f"Could not acknowledge job {message.job_id}: Redis unavailable")
            return
        try:
            await redis.xack(JOB_STREAM, REDIS_CONSUMER_GROUP, message._message_id)
        except Exception as e:
            logger.warning(f"Failed to acknowledge job {message.job_id}: {e}")

    async def reject(self, message: JobMessage, error: str) -> None:
        """Copy to the dead-letter stream, then acknowledge the original."""
        if not message._message_id:
            return
        redis = await get_redis()
        if not redis:
            return
        try:
            entry = message.to_stream_dict()
            entry["error"] = error[:500]
            entry["failed_at"] = datetime.now(timezone.utc).isoformat()
            await redis.xadd(DEAD_LETTER_STREAM, entry, maxlen=DEAD_LETTER_MAX_LEN)
            await redis.xack(JOB_STREAM, REDIS_CONSUMER_GROUP, message._message_id)
            logger.info(f"Job {message.job_id} moved to dead letter stream: {error[:100]}")
        except Exception as e:
            logger.warning(f"Failed to dead-letter job {message.job_id}: {e}")

    def pending_count(self) -> int:
        """Last observed backlog; see refresh_backlog()."""
        return self._backlog

    async def refresh_backlog(self) -> int:
        """Entries not yet delivered to the group plus delivered-but-unacked ones."""
        redis = await get_redis()
        if not redis:
            return self._backlog
        try:
            groups = await redis.xinfo_groups(JOB_STREAM)
            group = next((g for g in groups if g.get("name") == REDIS_CONSUMER_GROUP), None)
            if group is None:
                self._backlog = 0
            else:
                lag = group.get("lag")
                if lag is None:
                    # lag is absent before Redis 7 or when it cannot be computed
                    lag = await redis.xlen(JOB_STREAM)
                self._backlog = int(lag) + int(group.get("pending", 0))
        except Exception as e:
            logger.debug(f"Could not read stream backlog: {e}")
        return self._backlog

    async def get_queue_stats(self) -> dict:
        redis = await get_redis()
        if not redis:
            return {"backend": self.backend, "available": False}

        stats = {"backend": self.backend, "available": True}
        try:
            stats["length"] = await redis.xlen(JOB_STREAM)
            pending_info = await redis.xpending(JOB_STREAM, REDIS_CONSUMER_GROUP)
            stats["pending"] = pending_info.get("pending", 0) if pending_info else 0
            stats["dead_letter_queue"] = await redis.xlen(DEAD_LETTER_STREAM)
        except Exception as e:
            logger.warning(f"Failed to get queue stats: {e}")
        return stats

    async def close(self) -> None:
        pass


JobQueue = Union[InMemoryJobQueue, RedisJobQueue]


def create_job_queue(mode: str = JOB_QUEUE_MODE) -> JobQueue:
    """Build the queue backend for the configured mode ("memory" or "redis")."""
    if mode == "redis":
        return RedisJobQueue()
    if mode != "memory":
        raise ValueError(f"Unknown job queue mode: {mode!r} (expected 'memory' or 'redis')")
    return InMemoryJobQueue()

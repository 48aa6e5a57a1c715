"""
Scheduler counters as seen from the API.

In memory mode the scheduler lives in the API process and is read directly.
In redis mode every worker writes its own snapshot under
{prefix}:scheduler:{worker_id} with a TTL; the API sums the live ones. A
worker that dies simply stops refreshing its key and drops out of the sum.
"""

import json
import logging
from typing import Awaitable, Callable, Dict, Optional

from api.redis_client import RedisClient, redis_key
from config import SCHEDULER_STATUS_INTERVAL

logger = logging.getLogger(__name__)

QueueStatusReader = Callable[[], Awaitable[Dict[str, int]]]

# A snapshot outlives a few missed refreshes before it is considered dead
SNAPSHOT_TTL = SCHEDULER_STATUS_INTERVAL * 3


def empty_queue_status(max_concurrent_jobs: int = 0) -> Dict[str, int]:
    return {"activeJobs": 0, "maxConcurrentJobs": max_concurrent_jobs, "queuedJobs": 0}


def snapshot_key(worker_id: str) -> str:
    return redis_key("scheduler", worker_id)


async def publish_snapshot(worker_id: str, status: Dict[str, int], client: Optional[RedisClient] = None) -> None:
    """Write one worker's counters; failures are logged and ignored."""
    client = client or await RedisClient.get_instance()
    payload = json.dumps(status)
    await client.run(
        lambda r: r.setex(snapshot_key(worker_id), SNAPSHOT_TTL, payload),
        description="scheduler snapshot write",
    )


async def remove_snapshot(worker_id: str, client: Optional[RedisClient] = None) -> None:
    client = client or await RedisClient.get_instance()
    await client.run(lambda r: r.delete(snapshot_key(worker_id)), description="scheduler snapshot delete")


async def read_cluster_snapshots(client: Optional[RedisClient] = None) -> Dict[str, Dict[str, int]]:
    """worker_id -> counters for every worker with a live snapshot."""
    client = client or await RedisClient.get_instance()
    prefix = snapshot_key("")

    async def _read(r):
        keys = [key async for key in r.scan_iter(match=f"{prefix}*", count=100)]
        if not keys:
            return {}
        values = await r.mget(keys)
        snapshots = {}
        for key, raw in zip(keys, values):
            if raw is None:
                continue
            try:
                snapshots[key[len(prefix):]] = json.loads(raw)
            except ValueError:
                logger.warning(f"Ignoring malformed scheduler snapshot at {key}")
        return snapshots

    return await client.run(_read, default={}, description="scheduler snapshot read")


def cluster_status_reader(queue, client: Optional[RedisClient] = None) -> QueueStatusReader:
    """
    Reader for redis mode: sums worker snapshots, takes queuedJobs from the stream backlog.

    Args:
        queue: The RedisJobQueue the API publishes to
        client: Optional RedisClient (defaults to the shared one)
    """

    async def read() -> Dict[str, int]:
        snapshots = await read_cluster_snapshots(client)
        status = empty_queue_status()
        for snapshot in snapshots.values():
            status["activeJobs"] += int(snapshot.get("activeJobs", 0))
            status["maxConcurrentJobs"] += int(snapshot.get("maxConcurrentJobs", 0))
        status["queuedJobs"] = await queue.refresh_backlog()
        return status

    return read


def local_status_reader(scheduler) -> QueueStatusReader:
    """Reader for memory mode: the in-process scheduler's own counters."""

    async def read() -> Dict[str, int]:
        return scheduler.get_queue_status()

    return read

"""Tests for scheduler snapshots and the API-side queue status readers."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from api.job_queue import InMemoryJobQueue
from api.scheduler_status import (
    SNAPSHOT_TTL,
    cluster_status_reader,
    empty_queue_status,
    local_status_reader,
    publish_snapshot,
    read_cluster_snapshots,
    remove_snapshot,
    snapshot_key,
)
from worker.scheduler import JobScheduler


class FakeRedis:
    """Just enough of redis.asyncio.Redis for snapshot reads and writes."""

    def __init__(self):
        self.store = {}

    async def setex(self, key, ttl, value):
        self.store[key] = value

    async def delete(self, *keys):
        for key in keys:
            self.store.pop(key, None)

    async def scan_iter(self, match=None, count=None):
        prefix = match.rstrip("*")
        for key in list(self.store):
            if key.startswith(prefix):
                yield key

    async def mget(self, keys):
        return [self.store.get(k) for k in keys]


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def redis_client(fake_redis):
    async def run(operation, default=None, description=""):
        return await operation(fake_redis)

    client = MagicMock()
    client.run = AsyncMock(side_effect=run)
    return client


class TestSnapshots:
    """Tests for per-worker snapshot keys."""

    def test_key(self):
        assert snapshot_key("worker-1") == "vforge:scheduler:worker-1"

    async def test_publish_and_read(self, redis_client, fake_redis):
        await publish_snapshot("w1", {"activeJobs": 1, "maxConcurrentJobs": 2, "queuedJobs": 0}, redis_client)
        await publish_snapshot("w2", {"activeJobs": 2, "maxConcurrentJobs": 2, "queuedJobs": 0}, redis_client)

        snapshots = await read_cluster_snapshots(redis_client)

        assert set(snapshots) == {"w1", "w2"}
        assert snapshots["w2"]["activeJobs"] == 2

    async def test_remove(self, redis_client, fake_redis):
        await publish_snapshot("w1", empty_queue_status(2), redis_client)
        await remove_snapshot("w1", redis_client)
        assert await read_cluster_snapshots(redis_client) == {}

    async def test_malformed_snapshot_skipped(self, redis_client, fake_redis):
        fake_redis.store[snapshot_key("bad")] = "{not json"
        fake_redis.store[snapshot_key("good")] = json.dumps(empty_queue_status(1))

        assert set(await read_cluster_snapshots(redis_client)) == {"good"}

    def test_ttl_outlives_refresh(self):
        assert SNAPSHOT_TTL > 0


class TestReaders:
    """Tests for the memory-mode and redis-mode readers."""

    async def test_cluster_reader_sums_workers(self, redis_client):
        await publish_snapshot("w1", {"activeJobs": 1, "maxConcurrentJobs": 2, "queuedJobs": 9}, redis_client)
        await publish_snapshot("w2", {"activeJobs": 2, "maxConcurrentJobs": 4, "queuedJobs": 9}, redis_client)
        queue = MagicMock()
        queue.refresh_backlog = AsyncMock(return_value=5)

        status = await cluster_status_reader(queue, redis_client)()

        assert status == {"activeJobs": 3, "maxConcurrentJobs": 6, "queuedJobs": 5}

    async def test_cluster_reader_without_workers(self, redis_client):
        queue = MagicMock()
        queue.refresh_backlog = AsyncMock(return_value=0)
        assert await cluster_status_reader(queue, redis_client)() == empty_queue_status()

    async def test_local_reader(self):
        queue = InMemoryJobQueue()
        scheduler = JobScheduler(queue, MagicMock(), MagicMock(), MagicMock(), max_concurrent_jobs=3)

        assert await local_status_reader(scheduler)() == {"activeJobs": 0, "maxConcurrentJobs": 3, "queuedJobs": 0}

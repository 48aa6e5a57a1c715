"""Tests for the SSE status notifier."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from api.enums import JobStatus
from api.job_service import JobService
from api.notifier import StatusNotifier
from config import SSE_RECONNECT_TIMEOUT_MS


@pytest.fixture
def queue_status():
    return AsyncMock(return_value={"activeJobs": 1, "maxConcurrentJobs": 2, "queuedJobs": 4})


@pytest.fixture
def notifier(repository, cache, blob_store, memory_queue, queue_status):
    service = JobService(repository, cache, blob_store, memory_queue, queue_status)
    return StatusNotifier(service, update_interval=0, heartbeat_interval=3600)


async def _job(repository, owner_id, status):
    job = await repository.create(owner_id, "https://example.com/v.mp4", ["720p"])
    if status != JobStatus.PENDING:
        await repository.update(job["id"], status=status, progress=30)
    return job


def _disconnecting_request(ticks):
    request = MagicMock()
    request.is_disconnected = AsyncMock(side_effect=[False] * ticks + [True])
    return request


class TestSample:
    """Tests for one tick of events."""

    async def test_owner_sees_only_own_active_jobs(self, notifier, repository, owner):
        mine = await _job(repository, owner.id, JobStatus.PROCESSING)
        await _job(repository, owner.id, JobStatus.PENDING)
        await _job(repository, "someone-else", JobStatus.DOWNLOADING)

        events = await notifier.sample(owner)

        updates = [json.loads(e["data"]) for e in events if e["event"] == "job_update"]
        assert [u["jobId"] for u in updates] == [mine["id"]]
        assert updates[0]["status"] == "PROCESSING"
        assert updates[0]["progress"] == 30
        assert "updated_at" in updates[0]

    async def test_admin_sees_all_active_jobs(self, notifier, repository, admin):
        a = await _job(repository, "user-1", JobStatus.PROCESSING)
        b = await _job(repository, "user-2", JobStatus.UPLOADING)

        events = await notifier.sample(admin)

        ids = {json.loads(e["data"])["jobId"] for e in events if e["event"] == "job_update"}
        assert ids == {a["id"], b["id"]}

    async def test_system_stats_is_last(self, notifier, repository, owner):
        await _job(repository, owner.id, JobStatus.PROCESSING)

        events = await notifier.sample(owner)

        assert events[-1]["event"] == "system_stats"
        assert json.loads(events[-1]["data"]) == {"activeJobs": 1, "maxConcurrentJobs": 2, "queuedJobs": 4}

    async def test_no_active_jobs_still_sends_stats(self, notifier, owner):
        events = await notifier.sample(owner)
        assert [e["event"] for e in events] == ["system_stats"]


class TestStream:
    """Tests for the per-connection event generator."""

    async def test_retry_hint_first_then_events(self, notifier, repository, owner):
        await _job(repository, owner.id, JobStatus.PROCESSING)

        events = [e async for e in notifier.stream(_disconnecting_request(1), owner)]

        assert events[0] == {"retry": SSE_RECONNECT_TIMEOUT_MS}
        assert [e["event"] for e in events[1:]] == ["job_update", "system_stats"]

    async def test_stops_when_client_disconnects(self, notifier, owner):
        request = _disconnecting_request(3)

        events = [e async for e in notifier.stream(request, owner)]

        assert [e.get("event") for e in events[1:]] == ["system_stats"] * 3
        assert request.is_disconnected.await_count == 4
        assert notifier.open_streams == 0

    async def test_heartbeat_emitted(self, repository, cache, blob_store, memory_queue, queue_status, owner):
        service = JobService(repository, cache, blob_store, memory_queue, queue_status)
        notifier = StatusNotifier(service, update_interval=0, heartbeat_interval=0)

        events = [e async for e in notifier.stream(_disconnecting_request(1), owner)]

        assert events[-1]["event"] == "heartbeat"
        assert "timestamp" in json.loads(events[-1]["data"])

    async def test_failed_sample_skips_tick(self, owner):
        service = MagicMock()
        service.list_active_jobs = AsyncMock(side_effect=ConnectionError("db down"))
        notifier = StatusNotifier(service, update_interval=0, heartbeat_interval=3600)

        events = [e async for e in notifier.stream(_disconnecting_request(2), owner)]

        assert events == [{"retry": SSE_RECONNECT_TIMEOUT_MS}]
        assert notifier.open_streams == 0

    async def test_open_streams_counted_while_connected(self, notifier, owner):
        stream = notifier.stream(_disconnecting_request(5), owner)
        await stream.__anext__()
        await stream.__anext__()

        assert notifier.open_streams == 1

        await stream.aclose()
        assert notifier.open_streams == 0

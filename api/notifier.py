"""
Push channel for job status (Server-Sent Events).

Each connected client gets its own polling loop: every SSE_UPDATE_INTERVAL it
samples the active jobs it may see plus the scheduler counters and emits them.
The loop lives inside the response generator, so when the client goes away
the generator is closed and nothing keeps running on its behalf.

SSE Message Format:
    event: job_update
    data: {"jobId": 12, "status": "PROCESSING", "progress": 45, "updated_at": "..."}

    event: system_stats
    data: {"activeJobs": 1, "maxConcurrentJobs": 2, "queuedJobs": 3}

    event: heartbeat
    data: {"timestamp": "..."}
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List

from api.job_service import JobService, Principal
from api.schemas import JobUpdateEvent
from config import SSE_HEARTBEAT_INTERVAL, SSE_RECONNECT_TIMEOUT_MS, SSE_UPDATE_INTERVAL

logger = logging.getLogger(__name__)


def _heartbeat() -> Dict[str, str]:
    return {"event": "heartbeat", "data": json.dumps({"timestamp": datetime.now(timezone.utc).isoformat()})}


class StatusNotifier:
    def __init__(
        self,
        job_service: JobService,
        update_interval: float = SSE_UPDATE_INTERVAL,
        heartbeat_interval: float = SSE_HEARTBEAT_INTERVAL,
    ):
        self._job_service = job_service
        self._update_interval = update_interval
        self._heartbeat_interval = heartbeat_interval
        self.open_streams = 0

    async def sample(self, principal: Principal) -> List[Dict[str, Any]]:
        """
        One tick worth of events: a job_update per visible active job, then system_stats.

        Admins see every owner's active jobs.
        """
        owner_id = None if principal.is_admin else principal.id
        events = []
        for job in await self._job_service.list_active_jobs(owner_id):
            payload = JobUpdateEvent(
                jobId=job["id"], status=job["status"], progress=job["progress"], updated_at=job["updated_at"]
            ).model_dump(mode="json")
            events.append({"event": "job_update", "data": json.dumps(payload)})

        queue = await self._job_service.queue_status()
        events.append({"event": "system_stats", "data": json.dumps(queue)})
        return events

    async def stream(self, request, principal: Principal) -> AsyncIterator[Dict[str, str]]:
        """Event generator for EventSourceResponse; runs until the client disconnects."""
        # Reconnect delay hint for EventSource clients
        yield {"retry": SSE_RECONNECT_TIMEOUT_MS}

        self.open_streams += 1
        loop = asyncio.get_running_loop()
        last_heartbeat = loop.time()
        logger.debug(f"SSE stream opened for {principal.id} ({self.open_streams} open)")
        try:
            while not await request.is_disconnected():
                try:
                    for event in await self.sample(principal):
                        yield event
                except Exception as e:
                    # A failed sample only skips this tick
                    logger.warning(f"SSE sample failed for {principal.id}: {e}")

                now = loop.time()
                if now - last_heartbeat >= self._heartbeat_interval:
                    yield _heartbeat()
                    last_heartbeat = now

                await asyncio.sleep(self._update_interval)
        finally:
            self.open_streams -= 1
            logger.debug(f"SSE stream closed for {principal.id} ({self.open_streams} open)")

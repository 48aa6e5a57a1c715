"""
StuckJobReconciler - recovery for pipelines whose process died.

Every STALE_JOB_CHECK_INTERVAL seconds, any job in DOWNLOADING, PROCESSING
or UPLOADING whose updated_at is older than STALE_JOB_THRESHOLD is put back
to PENDING (progress 0, error_text cleared) and published to the queue
again. A live pipeline writes progress far more often than the threshold,
so only abandoned jobs match.
"""

import asyncio
import logging
from datetime import timedelta
from typing import List

from api.database import utcnow
from api.enums import JobStatus
from api.job_queue import JobMessage
from api.job_repository import JobRepository
from api.metrics import STALE_JOBS_RESET_TOTAL
from api.status_cache import StatusCache
from config import STALE_JOB_CHECK_INTERVAL, STALE_JOB_THRESHOLD
from worker.alerts import alert_stale_jobs_reset, send_alert_fire_and_forget

logger = logging.getLogger(__name__)


class StuckJobReconciler:
    def __init__(
        self,
        repository: JobRepository,
        queue,
        cache: StatusCache,
        threshold_seconds: int = STALE_JOB_THRESHOLD,
        interval_seconds: float = STALE_JOB_CHECK_INTERVAL,
    ):
        self._repository = repository
        self._queue = queue
        self._cache = cache
        self.threshold_seconds = threshold_seconds
        self.interval_seconds = interval_seconds
        self._stopping = asyncio.Event()

    async def sweep(self) -> List[int]:
        """
        Reset stale active jobs once.

        Returns:
            IDs of the jobs that were reset
        """
        cutoff = utcnow() - timedelta(seconds=self.threshold_seconds)
        stale = await self._repository.find_stale(cutoff)
        reset_ids = []

        for job in stale:
            # Guarded on the status we saw, so a job that just finished is left alone
            reset = await self._repository.transition(
                job["id"], [job["status"]], JobStatus.PENDING, progress=0, error_text=None
            )
            if reset is None:
                continue

            logger.warning(
                f"Reset stale job {job['id']} (was {job['status']} at {job['progress']}%, "
                f"last update {job['updated_at'].isoformat()})"
            )
            await self._cache.invalidate_job(job["id"], job["owner_id"])
            reset_ids.append(job["id"])
            STALE_JOBS_RESET_TOTAL.inc()

            try:
                await self._queue.publish(JobMessage(job_id=job["id"], requested_formats=job["requested_formats"]))
            except Exception as e:
                # Still PENDING; picked up again by a later restart or resubmission
                logger.error(f"Failed to requeue stale job {job['id']}: {e}")

        if reset_ids:
            send_alert_fire_and_forget(alert_stale_jobs_reset(reset_ids, self.threshold_seconds))
        return reset_ids

    async def run(self) -> None:
        """Sweep every interval until stop()."""
        logger.info(
            f"Stuck-job reconciler started (threshold {self.threshold_seconds}s, every {self.interval_seconds}s)"
        )
        while not self._stopping.is_set():
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Stale job sweep failed: {e}")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Stuck-job reconciler stopped")

    def stop(self) -> None:
        self._stopping.set()

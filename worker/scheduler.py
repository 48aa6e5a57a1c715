"""
JobScheduler - bounded-concurrency dispatcher.

A single dispatcher loop pulls messages from the queue while fewer than
max_concurrent_jobs pipelines are running and starts one task per job. When
a task finishes (any outcome) its slot is released and the dispatcher is
woken in the same step, so queued work never waits on a poll interval.

The scheduler owns every task it starts: stop() stops receiving and drain()
waits for (or, after the grace period, cancels) whatever is still running.
"""

import asyncio
import logging
from typing import Optional, Set

from api.enums import JobStatus
from api.errors import InternalError
from api.job_queue import JobMessage
from api.job_repository import JobRepository
from api.job_state import NON_TERMINAL_STATES
from api.metrics import JOBS_ACTIVE, QUEUE_DEPTH
from api.status_cache import StatusCache
from config import MAX_CONCURRENT_JOBS, QUEUE_RECEIVE_TIMEOUT, SHUTDOWN_GRACE_PERIOD
from worker.pipeline import ProcessingPipeline

logger = logging.getLogger(__name__)


class JobScheduler:
    def __init__(
        self,
        queue,
        pipeline: ProcessingPipeline,
        repository: JobRepository,
        cache: StatusCache,
        max_concurrent_jobs: int = MAX_CONCURRENT_JOBS,
        receive_timeout: float = QUEUE_RECEIVE_TIMEOUT,
    ):
        if max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be at least 1")
        self._queue = queue
        self._pipeline = pipeline
        self._repository = repository
        self._cache = cache
        self.max_concurrent_jobs = max_concurrent_jobs
        self._receive_timeout = receive_timeout

        self._active = 0
        self._tasks: Set[asyncio.Task] = set()
        self._slot_freed: Optional[asyncio.Condition] = None
        self._stopping = False
        self.dispatched = 0
        self.released = 0

    @property
    def active_jobs(self) -> int:
        return self._active

    def _condition(self) -> asyncio.Condition:
        if self._slot_freed is None:
            self._slot_freed = asyncio.Condition()
        return self._slot_freed

    def get_queue_status(self) -> dict:
        """Current counters. Pure read, no I/O."""
        return {
            "activeJobs": self._active,
            "maxConcurrentJobs": self.max_concurrent_jobs,
            "queuedJobs": self._queue.pending_count(),
        }

    async def run(self) -> None:
        """Dispatch until stop() is called."""
        condition = self._condition()
        logger.info(f"Scheduler started (max {self.max_concurrent_jobs} concurrent jobs)")

        while not self._stopping:
            async with condition:
                await condition.wait_for(lambda: self._active < self.max_concurrent_jobs or self._stopping)
            if self._stopping:
                break

            try:
                message = await self._queue.receive(self._receive_timeout)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Queue receive failed: {e}")
                await asyncio.sleep(self._receive_timeout)
                continue

            QUEUE_DEPTH.set(self._queue.pending_count())
            if message is None:
                continue
            if self._stopping:
                # Unacked, so it is redelivered after the visibility timeout
                logger.info(f"Scheduler stopping, leaving job {message.job_id} on the queue")
                break

            self._dispatch(message)

        logger.info("Scheduler dispatch loop stopped")

    def _dispatch(self, message: JobMessage) -> None:
        self._active += 1
        self.dispatched += 1
        JOBS_ACTIVE.set(self._active)
        logger.info(f"Dispatching job {message.job_id} (attempt {message.attempt}, {self._active}/{self.max_concurrent_jobs} slots)")
        task = asyncio.create_task(self._run_job(message), name=f"job-{message.job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_job(self, message: JobMessage) -> None:
        try:
            outcome = await self._pipeline.execute(message.job_id, message.requested_formats)
            logger.info(f"Job {message.job_id} finished: {outcome.value}")
        except asyncio.CancelledError:
            logger.warning(f"Job {message.job_id} cancelled during shutdown")
            raise
        except Exception as e:
            # The pipeline converts its own errors; anything here escaped before it could
            logger.exception(f"Pipeline crashed for job {message.job_id}: {e}")
            await self._fail_job(message.job_id)
        finally:
            await self._release(message)

    async def _fail_job(self, job_id: int) -> None:
        try:
            job = await self._repository.transition(
                job_id, NON_TERMINAL_STATES, JobStatus.FAILED, error_text=InternalError.public_message
            )
            if job is not None:
                await self._cache.invalidate_job(job_id, job["owner_id"])
        except Exception as e:
            logger.error(f"Could not mark job {job_id} FAILED after crash: {e}")

    async def _release(self, message: JobMessage) -> None:
        try:
            await self._queue.ack(message)
        except Exception as e:
            logger.warning(f"Failed to ack message for job {message.job_id}: {e}")
        finally:
            condition = self._condition()
            async with condition:
                self._active -= 1
                self.released += 1
                JOBS_ACTIVE.set(self._active)
                condition.notify_all()

    async def stop(self) -> None:
        """Stop receiving new messages; running jobs continue."""
        self._stopping = True
        condition = self._condition()
        async with condition:
            condition.notify_all()

    async def drain(self, grace_period: float = SHUTDOWN_GRACE_PERIOD) -> int:
        """
        Wait for running jobs, cancelling any still going after grace_period.

        Returns:
            Number of jobs that had to be cancelled
        """
        await self.stop()
        tasks = list(self._tasks)
        if not tasks:
            return 0

        logger.info(f"Waiting up to {grace_period:.0f}s for {len(tasks)} running jobs")
        done, pending = await asyncio.wait(tasks, timeout=grace_period)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(f"Cancelled {len(pending)} jobs still running after {grace_period:.0f}s")
        return len(pending)

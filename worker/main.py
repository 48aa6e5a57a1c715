"""
Standalone worker process (JOB_QUEUE_MODE=redis).

Consumes the Redis job stream with a JobScheduler, runs the stuck-job
reconciler, and publishes its scheduler counters so the API can show
cluster-wide queue status. Run one or more of these next to the API:

    python -m worker.main

On SIGTERM/SIGINT the worker stops taking new messages, gives in-flight jobs
SHUTDOWN_GRACE_PERIOD seconds to finish, then exits. Jobs it had to cancel
stay active in the database and are reset by the reconciler once stale.
"""

import asyncio
import logging
import signal
import socket
import uuid
from typing import List, Optional

from api.blob_store import LocalBlobStore
from api.database import configure_database, create_tables, database
from api.job_queue import RedisJobQueue
from api.job_repository import JobRepository
from api.metrics import init_app_info
from api.redis_client import RedisClient
from api.scheduler_status import publish_snapshot, remove_snapshot
from api.status_cache import create_status_cache
from code_version import CODE_VERSION
from config import (
    DATABASE_URL,
    MAX_CONCURRENT_JOBS,
    REDIS_URL,
    SCHEDULER_STATUS_INTERVAL,
    SHUTDOWN_GRACE_PERIOD,
)
from worker.alerts import alert_worker_shutdown, alert_worker_startup
from worker.pipeline import ProcessingPipeline
from worker.reconciler import StuckJobReconciler
from worker.scheduler import JobScheduler
from worker.transcode_engine import FFmpegTranscodeEngine

logger = logging.getLogger(__name__)


class WorkerState:
    """Identity and shutdown flag of one worker process."""

    def __init__(self, worker_id: Optional[str] = None):
        self.worker_id = worker_id or f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
        self.shutdown_requested = False
        self._shutdown_event: Optional[asyncio.Event] = None

    @property
    def shutdown_event(self) -> asyncio.Event:
        if self._shutdown_event is None:
            self._shutdown_event = asyncio.Event()
        return self._shutdown_event

    def request_shutdown(self) -> None:
        if not self.shutdown_requested:
            logger.info("Shutdown requested, finishing in-flight jobs...")
        self.shutdown_requested = True
        self.shutdown_event.set()


def install_signal_handlers(state: WorkerState) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, state.request_shutdown)
        except NotImplementedError:
            # Windows event loops
            signal.signal(sig, lambda *_: state.request_shutdown())


async def publish_status_loop(state: WorkerState, scheduler: JobScheduler, interval: float = SCHEDULER_STATUS_INTERVAL):
    """Refresh this worker's scheduler snapshot until shutdown."""
    while not state.shutdown_requested:
        await publish_snapshot(state.worker_id, scheduler.get_queue_status())
        try:
            await asyncio.wait_for(state.shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass


async def worker_loop(state: Optional[WorkerState] = None) -> None:
    state = state or WorkerState()
    install_signal_handlers(state)

    if not REDIS_URL:
        raise SystemExit("VFORGE_REDIS_URL must be set to run a standalone worker")

    create_tables(DATABASE_URL)
    await database.connect()
    await configure_database()
    await RedisClient.get_instance()

    repository = JobRepository(database)
    cache = create_status_cache("redis")
    blob_store = LocalBlobStore()
    queue = RedisJobQueue()
    await queue.initialize(state.worker_id)

    pipeline = ProcessingPipeline(repository, cache, blob_store, FFmpegTranscodeEngine())
    scheduler = JobScheduler(queue, pipeline, repository, cache, max_concurrent_jobs=MAX_CONCURRENT_JOBS)
    reconciler = StuckJobReconciler(repository, queue, cache)

    init_app_info(CODE_VERSION, "worker")
    logger.info(f"Worker {state.worker_id} started (max {MAX_CONCURRENT_JOBS} concurrent jobs)")
    await alert_worker_startup(state.worker_id, MAX_CONCURRENT_JOBS)

    tasks: List[asyncio.Task] = [
        asyncio.create_task(scheduler.run(), name="scheduler"),
        asyncio.create_task(reconciler.run(), name="reconciler"),
        asyncio.create_task(publish_status_loop(state, scheduler), name="scheduler-status"),
    ]

    try:
        await state.shutdown_event.wait()
    finally:
        reconciler.stop()
        cancelled = await scheduler.drain(SHUTDOWN_GRACE_PERIOD)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        await remove_snapshot(state.worker_id)
        await alert_worker_shutdown(state.worker_id, jobs_in_flight=cancelled)
        await queue.close()
        await RedisClient.reset_instance()
        await database.disconnect()
        logger.info(f"Worker {state.worker_id} stopped")


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    asyncio.run(worker_loop())


if __name__ == "__main__":
    main()

"""
Read, delete, cancel and admin operations over jobs.

Reads go through StatusCache and return JSON-safe dicts (the shape the
pydantic response models dump to), so a cached value and a fresh one look
the same to callers. Every mutation invalidates the keys it touches.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

import psutil

from api.blob_store import BlobStore
from api.enums import JobStatus, SortBy, SortOrder
from api.errors import ForbiddenError, NotFoundError, ValidationError
from api.job_queue import JobMessage
from api.job_repository import JobRepository
from api.job_state import NON_TERMINAL_STATES, state_machine
from api.database import utcnow
from api.redis_client import redis_health
from api.scheduler_status import QueueStatusReader, empty_queue_status
from api.schemas import (
    ActiveJob,
    AssetDownload,
    AssetResponse,
    JobResponse,
    ProcessingStatus,
    QueueStatus,
    StatusStats,
)
from api.status_cache import StatusCache
from config import LIST_DEFAULT_LIMIT, LIST_MAX_LIMIT, PRESIGN_EXPIRY, STORAGE_PATH

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    """Authenticated caller, as handed over by the identity layer."""

    id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def normalize_pagination(page: Any, limit: Any) -> Dict[str, int]:
    """page >= 1, 1 <= limit <= LIST_MAX_LIMIT; garbage falls back to the defaults."""
    try:
        page_num = max(1, int(page))
    except (TypeError, ValueError):
        page_num = 1
    try:
        limit_num = min(LIST_MAX_LIMIT, max(1, int(limit)))
    except (TypeError, ValueError):
        limit_num = LIST_DEFAULT_LIMIT
    return {"page": page_num, "limit": limit_num, "offset": (page_num - 1) * limit_num}


def _parse_enum(enum_cls, value, default):
    if value is None or value == "":
        return default
    try:
        return enum_cls(value.upper() if enum_cls in (SortOrder, JobStatus) else value)
    except (ValueError, AttributeError):
        return default


def _job_json(job: Dict[str, Any], asset_count: Optional[int] = None) -> Dict[str, Any]:
    return JobResponse.model_validate({**job, "asset_count": asset_count}).model_dump(mode="json")


def _asset_json(asset: Dict[str, Any]) -> Dict[str, Any]:
    return AssetResponse.model_validate(asset).model_dump(mode="json")


class JobService:
    def __init__(
        self,
        repository: JobRepository,
        cache: StatusCache,
        blob_store: BlobStore,
        queue,
        queue_status: Optional[QueueStatusReader] = None,
    ):
        self._repository = repository
        self._cache = cache
        self._blob_store = blob_store
        self._queue = queue
        self._queue_status = queue_status

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_job(self, job_id: int, principal: Principal) -> Dict[str, Any]:
        """
        One job, visible to its owner (and to admins).

        Raises:
            NotFoundError: missing, or owned by someone else (existence is not leaked)
        """

        async def load():
            job = await self._repository.find_by_id(job_id)
            return _job_json(job) if job else None

        job = await self._cache.get_job(job_id, load)
        if job is None or (job["owner_id"] != principal.id and not principal.is_admin):
            raise NotFoundError("Job not found")
        return job

    async def _get_fresh_job(self, job_id: int, principal: Principal) -> Dict[str, Any]:
        """Uncached read for decisions that depend on the current status."""
        job = await self._repository.find_by_id(job_id)
        if job is None or (job["owner_id"] != principal.id and not principal.is_admin):
            raise NotFoundError("Job not found")
        return job

    async def list_jobs(
        self,
        owner_id: Optional[str],
        page: Any = 1,
        limit: Any = LIST_DEFAULT_LIMIT,
        status: Optional[str] = None,
        sort_by: Optional[str] = None,
        sort_order: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Paginated job list. owner_id=None lists every owner's jobs (admin view).

        Unknown status filters are ignored and unknown sort parameters fall back
        to created_at DESC. COMPLETED jobs carry their asset count, others 0.
        """
        paging = normalize_pagination(page, limit)
        status_filter = _parse_enum(JobStatus, status, None)
        sort_column = _parse_enum(SortBy, sort_by, SortBy.CREATED_AT)
        order = _parse_enum(SortOrder, sort_order, SortOrder.DESC)

        total = await self._repository.count_by(owner_id=owner_id, status=status_filter)
        rows = await self._repository.find_all(
            owner_id=owner_id,
            status=status_filter,
            sort_by=sort_column,
            sort_order=order,
            limit=paging["limit"],
            offset=paging["offset"],
        )
        completed_ids = [r["id"] for r in rows if r["status"] == JobStatus.COMPLETED.value]
        counts = await self._repository.count_assets(completed_ids)

        return {
            "jobs": [_job_json(r, counts.get(r["id"], 0) if r["id"] in completed_ids else 0) for r in rows],
            "pagination": {
                "page": paging["page"],
                "limit": paging["limit"],
                "total": total,
                "totalPages": math.ceil(total / paging["limit"]),
            },
        }

    async def get_assets(self, job_id: int, principal: Principal) -> List[Dict[str, Any]]:
        """Assets of a job the principal may see, newest first."""
        await self.get_job(job_id, principal)

        async def load():
            return [_asset_json(a) for a in await self._repository.find_assets(job_id)]

        return await self._cache.get_assets(job_id, load)

    async def get_asset_download(self, job_id: int, asset_id: int, principal: Principal) -> Dict[str, Any]:
        """Presigned, time-limited URL for one asset."""
        await self.get_job(job_id, principal)
        asset = await self._repository.find_asset(job_id, asset_id)
        if asset is None:
            raise NotFoundError("Asset not found")
        return AssetDownload(
            url=self._blob_store.presign(asset["storage_key"], PRESIGN_EXPIRY),
            content_type=asset["content_type"],
            expires_in=PRESIGN_EXPIRY,
        ).model_dump()

    async def get_owner_stats(self, owner_id: str) -> Dict[str, Dict[str, int]]:
        async def load():
            stats = await self._repository.owner_stats(owner_id)
            return {status: StatusStats(**values).model_dump() for status, values in stats.items()}

        return await self._cache.get_owner_stats(owner_id, load)

    # =========================================================================
    # Mutations
    # =========================================================================

    async def delete_job(self, job_id: int, principal: Principal) -> None:
        """
        Delete a job with its asset rows and blobs.

        Raises:
            NotFoundError: missing or not visible to the principal
            ForbiddenError: the job is DOWNLOADING, PROCESSING or UPLOADING
        """
        job = await self._get_fresh_job(job_id, principal)
        if not state_machine.can_delete(job["status"]):
            raise ForbiddenError("Cannot delete job in current status")

        deleted_assets = await self._repository.destroy(job_id)
        if deleted_assets is None:
            # Status moved between the read and the delete
            current = await self._repository.find_by_id(job_id)
            if current is None:
                raise NotFoundError("Job not found")
            raise ForbiddenError("Cannot delete job in current status")

        for asset in deleted_assets:
            try:
                await self._blob_store.delete(asset["storage_key"])
            except Exception as e:
                logger.warning(f"Failed to delete blob {asset['storage_key']} of job {job_id}: {e}")

        await self._cache.invalidate_job(job_id, job["owner_id"])
        logger.info(f"Job {job_id} deleted ({len(deleted_assets)} assets)")

    async def cancel_job(self, job_id: int, principal: Principal) -> Dict[str, Any]:
        """
        Move a PENDING or active job to CANCELLED.

        A running pipeline sees the status change on its next guarded write
        and stops without touching the job again.

        Raises:
            NotFoundError: missing or not visible to the principal
            ForbiddenError: the job is already COMPLETED, FAILED or CANCELLED
        """
        job = await self._get_fresh_job(job_id, principal)
        if not state_machine.can_cancel(job["status"]):
            raise ForbiddenError(f"Cannot cancel a {job['status']} job")

        updated = await self._repository.transition(job_id, NON_TERMINAL_STATES, JobStatus.CANCELLED)
        if updated is None:
            raise ForbiddenError("Job finished before it could be cancelled")

        await self._cache.invalidate_job(job_id, job["owner_id"])
        logger.info(f"Job {job_id} cancelled (was {job['status']})")
        return _job_json(updated)

    # =========================================================================
    # Admin
    # =========================================================================

    async def system_health(self) -> Dict[str, Any]:
        health: Dict[str, Any] = {
            "database": "ok" if await self._repository.ping() else "unavailable",
            "redis": await redis_health(),
            "cpu_percent": psutil.cpu_percent(interval=None),
            "memory_percent": psutil.virtual_memory().percent,
            "disk_free_bytes": None,
        }
        try:
            health["disk_free_bytes"] = (await asyncio.to_thread(psutil.disk_usage, str(STORAGE_PATH))).free
        except OSError as e:
            logger.warning(f"Could not read disk usage for {STORAGE_PATH}: {e}")
        return health

    async def queue_status(self) -> Dict[str, int]:
        if self._queue_status is None:
            return empty_queue_status()
        return await self._queue_status()

    async def get_processing_status(self) -> Dict[str, Any]:
        """System-wide view: counts per status, active jobs, health, scheduler counters."""

        async def load():
            counts = await self._repository.status_counts()
            active = await self._repository.find_active()
            return ProcessingStatus(
                jobCounts=counts,
                activeJobs=[ActiveJob.model_validate(j) for j in active],
                systemHealth=await self.system_health(),
                queue=QueueStatus(**await self.queue_status()),
            ).model_dump(mode="json")

        return await self._cache.get_processing_status(load)

    async def restart_failed_jobs(self) -> Dict[str, int]:
        """Reset every FAILED job to PENDING and queue it again."""
        restarted = 0
        for job in await self._repository.find_by_status(JobStatus.FAILED):
            reset = await self._repository.transition(
                job["id"], [JobStatus.FAILED], JobStatus.PENDING, progress=0, error_text=None
            )
            if reset is None:
                continue
            await self._cache.invalidate_job(job["id"], job["owner_id"])
            try:
                await self._queue.publish(JobMessage(job_id=job["id"], requested_formats=job["requested_formats"]))
            except Exception as e:
                # The job stays PENDING; the next restart or sweep can pick it up
                logger.error(f"Failed to requeue restarted job {job['id']}: {e}")
                continue
            restarted += 1

        logger.info(f"Restarted {restarted} failed jobs")
        return {"restartedCount": restarted}

    async def cleanup_old_jobs(self, older_than_days: int) -> Dict[str, int]:
        """Delete COMPLETED jobs (with assets and blobs) last touched more than N days ago."""
        if older_than_days < 1:
            raise ValidationError("older_than_days must be at least 1")

        cutoff = utcnow() - timedelta(days=older_than_days)
        deleted = 0
        for job in await self._repository.find_completed_before(cutoff):
            assets = await self._repository.destroy(job["id"], allowed_statuses=[JobStatus.COMPLETED])
            if assets is None:
                continue
            for asset in assets:
                try:
                    await self._blob_store.delete(asset["storage_key"])
                except Exception as e:
                    logger.warning(f"Failed to delete blob {asset['storage_key']}: {e}")
            await self._cache.invalidate_job(job["id"], job["owner_id"])
            deleted += 1

        logger.info(f"Cleaned up {deleted} completed jobs older than {older_than_days} days")
        return {"deletedCount": deleted, "olderThanDays": older_than_days}

    async def list_active_jobs(self, owner_id: Optional[str]) -> List[Dict[str, Any]]:
        """Active jobs for the notifier: one owner's, or everyone's when owner_id is None."""
        rows = await self._repository.find_active(owner_id)
        return [ActiveJob.model_validate(r).model_dump(mode="json") for r in rows]

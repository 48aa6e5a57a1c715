"""
JobRepository - system of record for Job and Asset rows.

All queries go through api.db_retry so transient lock/deadlock errors are
retried. Every job write bumps updated_at, which the stuck-job sweep relies on.

Status-dependent writes use a single guarded UPDATE ... RETURNING statement
(compare-and-set) on the status and, for a running pipeline, on the
attempt_number it claimed. Two deliveries of the same queue message, or a
reset pipeline racing the run that replaced it, can never both win.
transition() refuses any move the lifecycle in api.job_state does not allow.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

import sqlalchemy as sa
from databases import Database

from api import db_retry
from api.database import assets, database, jobs, utcnow
from api.enums import AssetType, JobStatus, SortBy, SortOrder
from api.job_state import ACTIVE_STATES, DELETABLE_STATES, state_machine

logger = logging.getLogger(__name__)

_JOB_COLUMNS = [c.name for c in jobs.c]
_ASSET_COLUMNS = [c.name for c in assets.c]
_DATETIME_FIELDS = ("created_at", "updated_at")


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Normalize to aware UTC; SQLite hands back naive datetimes."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _job_to_dict(row) -> Dict[str, Any]:
    job = {name: row[name] for name in _JOB_COLUMNS}
    job["requested_formats"] = [f for f in (job["requested_formats"] or "").split(",") if f]
    for name in _DATETIME_FIELDS:
        job[name] = _ensure_utc(job[name])
    return job


def _asset_to_dict(row) -> Dict[str, Any]:
    asset = {name: row[name] for name in _ASSET_COLUMNS}
    asset["created_at"] = _ensure_utc(asset["created_at"])
    return asset


def _status_values(statuses: Iterable[Union[JobStatus, str]]) -> List[str]:
    return [s.value if isinstance(s, JobStatus) else s for s in statuses]


class _DeleteRejected(Exception):
    """Rolls back a delete whose guard no longer matches."""


class JobRepository:
    """CRUD and query operations over the jobs and assets tables."""

    def __init__(self, db: Database = database):
        self._db = db

    async def ping(self) -> bool:
        try:
            await self._db.fetch_one("SELECT 1")
            return True
        except Exception as e:
            logger.warning(f"Database health check failed: {e}")
            return False

    # =========================================================================
    # Jobs
    # =========================================================================

    async def create(self, owner_id: str, input_source: str, requested_formats: Sequence[str]) -> Dict[str, Any]:
        """Insert a PENDING job at progress 0 and return it."""
        now = utcnow()
        job_id = await db_retry.execute(
            self._db,
            jobs.insert().values(
                owner_id=owner_id,
                input_source=input_source,
                requested_formats=",".join(requested_formats),
                status=JobStatus.PENDING.value,
                progress=0,
                error_text=None,
                attempt_number=0,
                created_at=now,
                updated_at=now,
            ),
        )
        job = await self.find_by_id(job_id)
        if job is None:
            raise RuntimeError(f"Job {job_id} vanished right after insert")
        return job

    async def find_by_id(self, job_id: int) -> Optional[Dict[str, Any]]:
        row = await db_retry.fetch_one(self._db, jobs.select().where(jobs.c.id == job_id))
        return _job_to_dict(row) if row else None

    def _filtered(self, query, owner_id: Optional[str], status: Optional[JobStatus]):
        if owner_id is not None:
            query = query.where(jobs.c.owner_id == owner_id)
        if status is not None:
            query = query.where(jobs.c.status == JobStatus(status).value)
        return query

    async def find_all(
        self,
        owner_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
        sort_by: SortBy = SortBy.CREATED_AT,
        sort_order: SortOrder = SortOrder.DESC,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """List jobs, optionally scoped to one owner and one status."""
        column = jobs.c[SortBy(sort_by).value]
        ordering = column.asc() if SortOrder(sort_order) == SortOrder.ASC else column.desc()
        query = self._filtered(jobs.select(), owner_id, status).order_by(ordering, jobs.c.id.desc())
        if limit is not None:
            query = query.limit(limit).offset(offset)
        rows = await db_retry.fetch_all(self._db, query)
        return [_job_to_dict(r) for r in rows]

    async def count_by(self, owner_id: Optional[str] = None, status: Optional[JobStatus] = None) -> int:
        query = self._filtered(sa.select(sa.func.count()).select_from(jobs), owner_id, status)
        return int(await db_retry.fetch_val(self._db, query) or 0)

    async def find_active(self, owner_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Jobs currently owned by a pipeline, oldest first."""
        query = jobs.select().where(jobs.c.status.in_(_status_values(ACTIVE_STATES)))
        if owner_id is not None:
            query = query.where(jobs.c.owner_id == owner_id)
        rows = await db_retry.fetch_all(self._db, query.order_by(jobs.c.created_at.asc()))
        return [_job_to_dict(r) for r in rows]

    async def find_by_status(self, status: JobStatus) -> List[Dict[str, Any]]:
        query = jobs.select().where(jobs.c.status == JobStatus(status).value).order_by(jobs.c.id.asc())
        rows = await db_retry.fetch_all(self._db, query)
        return [_job_to_dict(r) for r in rows]

    async def find_stale(self, older_than: datetime) -> List[Dict[str, Any]]:
        """Active jobs whose updated_at is older than the cutoff."""
        query = (
            jobs.select()
            .where(jobs.c.status.in_(_status_values(ACTIVE_STATES)))
            .where(jobs.c.updated_at < older_than)
            .order_by(jobs.c.updated_at.asc())
        )
        rows = await db_retry.fetch_all(self._db, query)
        return [_job_to_dict(r) for r in rows]

    async def find_completed_before(self, cutoff: datetime) -> List[Dict[str, Any]]:
        query = (
            jobs.select()
            .where(jobs.c.status == JobStatus.COMPLETED.value)
            .where(jobs.c.updated_at < cutoff)
            .order_by(jobs.c.id.asc())
        )
        rows = await db_retry.fetch_all(self._db, query)
        return [_job_to_dict(r) for r in rows]

    async def update(self, job_id: int, **values: Any) -> Optional[Dict[str, Any]]:
        """Unconditional update; returns the new row or None if the job is gone."""
        if "status" in values:
            values["status"] = JobStatus(values["status"]).value
        return await self._guarded_update(job_id, None, None, **values)

    async def transition(
        self,
        job_id: int,
        from_statuses: Optional[Iterable[Union[JobStatus, str]]],
        to_status: Union[JobStatus, str],
        *,
        attempt: Optional[int] = None,
        **values: Any,
    ) -> Optional[Dict[str, Any]]:
        """
        Compare-and-set status change, checked against the job lifecycle.

        Args:
            job_id: Job to update
            from_statuses: Statuses the job must currently be in (None = every
                status from which to_status is reachable)
            to_status: New status
            attempt: Only match the run holding this claim (see claim())
            **values: Other columns to set (progress, error_text, ...)

        Returns:
            The updated row, or None if the job is missing, its status did
            not match, or another run has claimed it since.

        Raises:
            InvalidTransitionError: A from_status can never move to to_status
        """
        to_status = JobStatus(to_status)
        if from_statuses is None:
            from_statuses = state_machine.predecessors(to_status)
        else:
            from_statuses = list(from_statuses)
            for current in from_statuses:
                state_machine.validate_transition(current, to_status)
        return await self._guarded_update(job_id, from_statuses, attempt, status=to_status.value, **values)

    async def claim(self, job_id: int) -> Optional[Dict[str, Any]]:
        """
        Take a PENDING job for processing: DOWNLOADING at progress 0.

        The returned row carries the new attempt_number. Every later write by
        the claiming run passes it as `attempt`, so a run that was reset and
        superseded can no longer change the job.
        """
        return await self.transition(
            job_id,
            [JobStatus.PENDING],
            JobStatus.DOWNLOADING,
            progress=0,
            attempt_number=jobs.c.attempt_number + 1,
        )

    async def _guarded_update(
        self,
        job_id: int,
        from_statuses: Optional[Iterable[Union[JobStatus, str]]],
        attempt: Optional[int],
        **values: Any,
    ) -> Optional[Dict[str, Any]]:
        values["updated_at"] = utcnow()
        query = jobs.update().where(jobs.c.id == job_id)
        if from_statuses is not None:
            query = query.where(jobs.c.status.in_(_status_values(from_statuses)))
        if attempt is not None:
            query = query.where(jobs.c.attempt_number == attempt)
        query = query.values(**values).returning(*jobs.c)

        row = await db_retry.fetch_one(self._db, query)
        return _job_to_dict(row) if row else None

    async def update_progress(
        self, job_id: int, status: JobStatus, progress: int, attempt: Optional[int] = None
    ) -> bool:
        """
        Write progress for a job the caller believes is in `status`.

        Returns False when the status or attempt no longer matches (the caller
        has lost ownership of the job) or when the write would move progress
        backwards. Writing the current progress again only refreshes updated_at.
        """
        progress = max(0, min(100, int(progress)))
        query = (
            jobs.update()
            .where(jobs.c.id == job_id)
            .where(jobs.c.status == JobStatus(status).value)
            .where(jobs.c.progress <= progress)
        )
        if attempt is not None:
            query = query.where(jobs.c.attempt_number == attempt)
        query = query.values(progress=progress, updated_at=utcnow()).returning(jobs.c.id)
        return await db_retry.fetch_one(self._db, query) is not None

    async def destroy(
        self,
        job_id: int,
        allowed_statuses: Iterable[JobStatus] = DELETABLE_STATES,
    ) -> Optional[List[Dict[str, Any]]]:
        """
        Delete a job and its asset rows in one transaction.

        The job row is only deleted while its status is in allowed_statuses;
        otherwise the transaction rolls back.

        Returns:
            The deleted asset rows (for blob cleanup), or None if nothing was
            deleted.
        """
        try:
            async with self._db.transaction():
                asset_rows = await self.find_assets(job_id)
                await db_retry.execute(self._db, assets.delete().where(assets.c.job_id == job_id))
                deleted = await db_retry.fetch_one(
                    self._db,
                    jobs.delete()
                    .where(jobs.c.id == job_id)
                    .where(jobs.c.status.in_(_status_values(allowed_statuses)))
                    .returning(jobs.c.id),
                )
                if deleted is None:
                    raise _DeleteRejected()
        except _DeleteRejected:
            return None
        return asset_rows

    async def status_counts(self) -> Dict[str, int]:
        """Job count per status across all owners (every status present, zero-filled)."""
        query = sa.select(jobs.c.status, sa.func.count().label("count")).group_by(jobs.c.status)
        rows = await db_retry.fetch_all(self._db, query)
        counts = {status.value: 0 for status in JobStatus}
        for row in rows:
            counts[row["status"]] = int(row["count"])
        return counts

    async def owner_stats(self, owner_id: str) -> Dict[str, Dict[str, int]]:
        """Per-status count and average progress for one owner."""
        query = (
            sa.select(
                jobs.c.status,
                sa.func.count().label("count"),
                sa.func.avg(jobs.c.progress).label("avg_progress"),
            )
            .where(jobs.c.owner_id == owner_id)
            .group_by(jobs.c.status)
        )
        rows = await db_retry.fetch_all(self._db, query)
        stats = {status.value: {"count": 0, "avg_progress": 0} for status in JobStatus}
        for row in rows:
            stats[row["status"]] = {
                "count": int(row["count"]),
                "avg_progress": int(round(float(row["avg_progress"] or 0))),
            }
        return stats

    # =========================================================================
    # Assets
    # =========================================================================

    async def create_asset(
        self,
        job_id: int,
        asset_type: AssetType,
        storage_key: str,
        content_type: str,
        size_bytes: Optional[int] = None,
    ) -> Dict[str, Any]:
        asset_id = await db_retry.execute(
            self._db,
            assets.insert().values(
                job_id=job_id,
                asset_type=AssetType(asset_type).value,
                storage_key=storage_key,
                size_bytes=size_bytes,
                content_type=content_type,
                created_at=utcnow(),
            ),
        )
        return await self.find_asset(job_id, asset_id)

    async def find_assets(self, job_id: int) -> List[Dict[str, Any]]:
        """Assets of a job, newest first."""
        query = assets.select().where(assets.c.job_id == job_id).order_by(assets.c.created_at.desc(), assets.c.id.desc())
        rows = await db_retry.fetch_all(self._db, query)
        return [_asset_to_dict(r) for r in rows]

    async def find_asset(self, job_id: int, asset_id: int) -> Optional[Dict[str, Any]]:
        query = assets.select().where(assets.c.job_id == job_id).where(assets.c.id == asset_id)
        row = await db_retry.fetch_one(self._db, query)
        return _asset_to_dict(row) if row else None

    async def delete_assets(self, job_id: int) -> int:
        """Delete every asset row of a job; returns how many there were."""
        existing = await self.find_assets(job_id)
        await db_retry.execute(self._db, assets.delete().where(assets.c.job_id == job_id))
        return len(existing)

    async def count_assets(self, job_ids: Sequence[int]) -> Dict[int, int]:
        if not job_ids:
            return {}
        query = (
            sa.select(assets.c.job_id, sa.func.count().label("count"))
            .where(assets.c.job_id.in_(list(job_ids)))
            .group_by(assets.c.job_id)
        )
        rows = await db_retry.fetch_all(self._db, query)
        return {int(row["job_id"]): int(row["count"]) for row in rows}

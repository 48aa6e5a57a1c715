"""
ProcessingPipeline - runs one job's stages in order.

    download -> metadata -> transcode per format -> thumbnail -> preview
             -> upload -> cleanup

Status and progress (0..100):

    DOWNLOADING   0..10   claim, then fetch the input
    PROCESSING   10..90   metadata (to 20), transcodes (20..80), thumbnail (85), preview (90)
    UPLOADING    90..99   one step per stored output
    COMPLETED       100

Claiming a job bumps its attempt_number. Every later write is guarded by the
status this run believes the job is in and by that attempt number. If the
guard fails the job was reset, cancelled, deleted or claimed by a newer run;
this run stops quietly (ABANDONED), removes what it stored and leaves the row
alone. Long stages refresh updated_at every JOB_HEARTBEAT_INTERVAL so the
stuck-job sweep never mistakes a live run for a dead one. Each run works in
its own directory, job-<id>-<attempt>.

The first stage failure is terminal: the job goes FAILED with
"<stage>: <reason>" as error_text. Once the job is claimed, execute() never
raises.
"""

import asyncio
import json
import logging
import shutil
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from api.blob_store import BlobStore, asset_storage_key
from api.enums import AssetType, JobStatus, OutputFormat, PipelineOutcome, content_type_for
from api.errors import job_error_text, truncate_error
from api.job_repository import JobRepository
from api.metrics import JOB_DURATION_SECONDS, JOBS_FINISHED_TOTAL, STAGE_DURATION_SECONDS
from api.status_cache import StatusCache
from config import ERROR_DETAIL_MAX_LENGTH, JOB_HEARTBEAT_INTERVAL, PROGRESS_UPDATE_INTERVAL, WORK_DIR
from worker.alerts import alert_job_failed, send_alert_fire_and_forget
from worker.downloader import download_with_retry
from worker.transcode_engine import TranscodeEngine

logger = logging.getLogger(__name__)

DOWNLOAD_DONE_PROGRESS = 10
METADATA_DONE_PROGRESS = 20
TRANSCODE_START_PROGRESS = 20
TRANSCODE_SPAN = 60
THUMBNAIL_DONE_PROGRESS = 85
PREVIEW_DONE_PROGRESS = 90
UPLOAD_START_PROGRESS = 90
UPLOAD_END_PROGRESS = 99


def transcode_progress(index: int, fraction: float, total: int) -> int:
    """Overall progress while transcoding format `index` (0-based) of `total`."""
    fraction = max(0.0, min(1.0, fraction))
    return int(TRANSCODE_START_PROGRESS + TRANSCODE_SPAN * (index + fraction) / total)


def upload_progress(done: int, total: int) -> int:
    if total <= 0:
        return UPLOAD_END_PROGRESS
    return UPLOAD_START_PROGRESS + (UPLOAD_END_PROGRESS - UPLOAD_START_PROGRESS) * done // total


class JobAbandoned(Exception):
    """The job left the status this run owns (reset, cancelled or deleted)."""


class StageFailed(Exception):
    """A fatal stage error, labelled with the stage it came from."""

    def __init__(self, stage: str, cause: BaseException):
        super().__init__(f"{stage}: {cause}")
        self.stage = stage
        self.cause = cause


class ProgressTracker:
    """
    Guarded, monotonic progress and status writes for one job.

    Intra-stage updates are throttled to one per min_interval; stage
    boundaries pass force=True and always write. Every write is bound to the
    attempt number this run claimed.
    """

    def __init__(
        self,
        repository: JobRepository,
        cache: StatusCache,
        job_id: int,
        owner_id: str,
        attempt: Optional[int] = None,
        min_interval: float = PROGRESS_UPDATE_INTERVAL,
    ):
        self._repository = repository
        self._cache = cache
        self.job_id = job_id
        self.owner_id = owner_id
        self.attempt = attempt
        self.min_interval = min_interval
        self.status = JobStatus.DOWNLOADING
        self.progress = 0
        self._last_write = 0.0

    async def update(self, progress: int, force: bool = False) -> None:
        progress = max(0, min(100, int(progress)))
        if progress <= self.progress and not force:
            return
        now = time.monotonic()
        if not force and now - self._last_write < self.min_interval:
            return

        progress = max(progress, self.progress)
        await self._write(progress)
        self.progress = progress
        self._last_write = now
        await self._cache.invalidate_job(self.job_id, self.owner_id)

    async def touch(self) -> None:
        """Refresh updated_at at the current progress."""
        await self._write(self.progress)
        self._last_write = time.monotonic()

    async def _write(self, progress: int) -> None:
        if not await self._repository.update_progress(self.job_id, self.status, progress, attempt=self.attempt):
            raise JobAbandoned(f"job {self.job_id} is no longer {self.status.value} for attempt {self.attempt}")

    async def advance(self, status: JobStatus, progress: int, **values: Any) -> Dict[str, Any]:
        """Move from the current status to the next one."""
        progress = max(progress, self.progress)
        job = await self._repository.transition(
            self.job_id, [self.status], status, attempt=self.attempt, progress=progress, **values
        )
        if job is None:
            raise JobAbandoned(f"job {self.job_id} left {self.status.value} before {status.value}")
        logger.info(f"Job {self.job_id}: {self.status.value} -> {status.value} ({progress}%)")
        self.status = status
        self.progress = progress
        self._last_write = time.monotonic()
        await self._cache.invalidate_job(self.job_id, self.owner_id)
        return job


class ProcessingPipeline:
    def __init__(
        self,
        repository: JobRepository,
        cache: StatusCache,
        blob_store: BlobStore,
        engine: TranscodeEngine,
        work_dir: Path = WORK_DIR,
        download=download_with_retry,
        progress_interval: float = PROGRESS_UPDATE_INTERVAL,
        heartbeat_interval: float = JOB_HEARTBEAT_INTERVAL,
    ):
        self._repository = repository
        self._cache = cache
        self._blob_store = blob_store
        self._engine = engine
        self._work_dir = Path(work_dir)
        self._download = download
        self._progress_interval = progress_interval
        self._heartbeat_interval = heartbeat_interval

    async def execute(self, job_id: int, requested_formats: Sequence[str]) -> PipelineOutcome:
        """
        Run every stage for one job.

        Args:
            job_id: Job to process
            requested_formats: Formats from the queue message (validated at admission)

        Returns:
            The outcome; once the job is claimed, exceptions are converted
            into job status

        Raises:
            Whatever the claim itself raises (e.g. the database is down); the
            job is still PENDING then and the scheduler marks it FAILED
        """
        started = time.monotonic()
        job = await self._repository.claim(job_id)
        if job is None:
            # Duplicate delivery, or the job was cancelled/deleted while queued
            logger.info(f"Job {job_id} is not PENDING, skipping")
            JOBS_FINISHED_TOTAL.labels(outcome=PipelineOutcome.SKIPPED.value).inc()
            return PipelineOutcome.SKIPPED

        attempt = job["attempt_number"]
        logger.info(f"Job {job_id}: PENDING -> DOWNLOADING (attempt {attempt})")
        tracker = ProgressTracker(
            self._repository, self._cache, job_id, job["owner_id"], attempt, self._progress_interval
        )
        job_dir = self._work_dir / f"job-{job_id}-{attempt}"
        stored: List[str] = []

        try:
            await self._cache.invalidate_job(job_id, job["owner_id"])
            formats = [OutputFormat(f) for f in (requested_formats or job["requested_formats"])]
            outputs = await self._produce_outputs(job, formats, job_dir, tracker)
            await tracker.advance(JobStatus.UPLOADING, UPLOAD_START_PROGRESS)
            await self._upload_outputs(job_id, outputs, tracker, stored)
            await tracker.advance(JobStatus.COMPLETED, 100, error_text=None)
            outcome = PipelineOutcome.COMPLETED
            logger.info(f"Job {job_id} completed with {len(stored)} assets")

        except JobAbandoned as e:
            logger.warning(f"Job {job_id} abandoned: {e}")
            await self._rollback_assets(job_id, job["owner_id"], stored)
            outcome = PipelineOutcome.ABANDONED

        except Exception as e:
            stage, cause = (e.stage, e.cause) if isinstance(e, StageFailed) else ("Processing", e)
            error_text = truncate_error(f"{stage}: {job_error_text(cause, f'job_id={job_id}')}", ERROR_DETAIL_MAX_LENGTH)
            logger.error(f"Job {job_id} failed in {stage}: {cause}")
            await self._rollback_assets(job_id, job["owner_id"], stored)
            outcome = await self._mark_failed(tracker, error_text)

        finally:
            await self._cleanup(job_dir)

        JOBS_FINISHED_TOTAL.labels(outcome=outcome.value).inc()
        JOB_DURATION_SECONDS.observe(time.monotonic() - started)
        return outcome

    # =========================================================================
    # Stages
    # =========================================================================

    async def _stage(self, name: str, label: str, coro, tracker: ProgressTracker):
        """Await one stage, timing it, keeping the job fresh and labelling any failure."""
        started = time.monotonic()
        try:
            return await self._with_heartbeat(coro, tracker)
        except (JobAbandoned, StageFailed):
            raise
        except Exception as e:
            raise StageFailed(label, e) from e
        finally:
            STAGE_DURATION_SECONDS.labels(stage=name).observe(time.monotonic() - started)

    async def _with_heartbeat(self, coro, tracker: ProgressTracker):
        """
        Await coro, refreshing the job every heartbeat interval while it runs.

        A failed refresh means another run or a user owns the job now: the
        work is cancelled and JobAbandoned raised.
        """
        task = asyncio.ensure_future(coro)
        try:
            while True:
                done, _ = await asyncio.wait({task}, timeout=self._heartbeat_interval)
                if done:
                    return task.result()
                await tracker.touch()
        finally:
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

    async def _produce_outputs(
        self,
        job: Dict[str, Any],
        formats: List[OutputFormat],
        job_dir: Path,
        tracker: ProgressTracker,
    ) -> List[Tuple[AssetType, Path]]:
        job_id = job["id"]
        outputs: List[Tuple[AssetType, Path]] = []
        await asyncio.to_thread(job_dir.mkdir, parents=True, exist_ok=True)

        source = job_dir / "source"
        await self._stage(
            "download", "Download", self._download(job["input_source"], source, self._blob_store), tracker
        )
        await tracker.update(DOWNLOAD_DONE_PROGRESS, force=True)
        await tracker.advance(JobStatus.PROCESSING, DOWNLOAD_DONE_PROGRESS)

        metadata = await self._extract_metadata(job_id, source, job_dir)
        duration = metadata.get("duration") if metadata else None
        if metadata is not None:
            outputs.append((AssetType.METADATA_JSON, job_dir / "metadata.json"))
        await tracker.update(METADATA_DONE_PROGRESS, force=True)

        for index, fmt in enumerate(formats):
            target = job_dir / f"{fmt.value}.mp4"

            async def on_progress(percent: int, index: int = index) -> None:
                await tracker.update(transcode_progress(index, percent / 100, len(formats)))

            await self._stage(
                "transcode",
                f"Transcode {fmt.value}",
                self._engine.transcode(source, fmt, target, on_progress=on_progress, duration=duration),
                tracker,
            )
            outputs.append((fmt.asset_type, target))
            await tracker.update(transcode_progress(index + 1, 0, len(formats)), force=True)

        thumbnail = job_dir / "thumbnail.jpg"
        await self._stage("thumbnail", "Thumbnail", self._engine.thumbnail(source, thumbnail, duration), tracker)
        outputs.append((AssetType.THUMBNAIL, thumbnail))
        await tracker.update(THUMBNAIL_DONE_PROGRESS, force=True)

        preview = job_dir / "preview.gif"
        await self._stage("preview", "Preview", self._engine.short_preview(source, preview), tracker)
        outputs.append((AssetType.GIF, preview))
        await tracker.update(PREVIEW_DONE_PROGRESS, force=True)

        return outputs

    async def _extract_metadata(self, job_id: int, source: Path, job_dir: Path) -> Optional[Dict[str, Any]]:
        """Probe the input and write metadata.json. Best effort: None on failure."""
        started = time.monotonic()
        try:
            info = await self._engine.probe(source)
            video = info.get("video") or {}
            audio = info.get("audio") or {}
            metadata = {
                "duration": info.get("duration"),
                "size": info.get("size"),
                "bitrate": info.get("bitrate"),
                "container": (info.get("format") or {}).get("format_name"),
                "width": video.get("width"),
                "height": video.get("height"),
                "video_codec": video.get("codec_name"),
                "audio_codec": audio.get("codec_name"),
            }
            await asyncio.to_thread((job_dir / "metadata.json").write_text, json.dumps(metadata, indent=2))
            return metadata
        except Exception as e:
            logger.warning(f"Job {job_id}: metadata extraction failed, continuing without it: {e}")
            return None
        finally:
            STAGE_DURATION_SECONDS.labels(stage="metadata").observe(time.monotonic() - started)

    async def _upload_outputs(
        self,
        job_id: int,
        outputs: List[Tuple[AssetType, Path]],
        tracker: ProgressTracker,
        stored: List[str],
    ) -> None:
        """Store every output and record its asset row; `stored` collects the keys to roll back."""
        started = time.monotonic()
        try:
            # Rows left behind by a run that crashed mid-upload
            leftover = await self._repository.delete_assets(job_id)
            if leftover:
                logger.info(f"Job {job_id}: removed {leftover} asset rows from an interrupted run")

            for done, (asset_type, path) in enumerate(outputs, start=1):
                key = asset_storage_key(job_id, asset_type)
                content_type = content_type_for(asset_type)
                try:
                    size = await self._with_heartbeat(self._blob_store.put(path, key, content_type), tracker)
                    stored.append(key)
                    await self._repository.create_asset(job_id, asset_type, key, content_type, size)
                except JobAbandoned:
                    raise
                except Exception as e:
                    raise StageFailed("Upload", e) from e
                await tracker.update(upload_progress(done, len(outputs)), force=True)
        finally:
            STAGE_DURATION_SECONDS.labels(stage="upload").observe(time.monotonic() - started)
        await self._cache.invalidate_job(job_id, tracker.owner_id)

    # =========================================================================
    # Failure handling and cleanup
    # =========================================================================

    async def _mark_failed(self, tracker: ProgressTracker, error_text: str) -> PipelineOutcome:
        job_id, owner_id, status = tracker.job_id, tracker.owner_id, tracker.status
        try:
            failed = await self._repository.transition(
                job_id, [status], JobStatus.FAILED, attempt=tracker.attempt, error_text=error_text
            )
        except Exception as e:
            # The reconciler will pick the job up once it goes stale
            logger.exception(f"Could not mark job {job_id} FAILED: {e}")
            return PipelineOutcome.FAILED

        if failed is None:
            logger.warning(f"Job {job_id} left {status.value} before it could be marked FAILED")
            return PipelineOutcome.ABANDONED

        await self._cache.invalidate_job(job_id, owner_id)
        send_alert_fire_and_forget(alert_job_failed(job_id, owner_id, error_text))
        return PipelineOutcome.FAILED

    async def _rollback_assets(self, job_id: int, owner_id: str, stored: List[str]) -> None:
        """Remove the rows and blobs this run created, so no partial asset set remains."""
        if not stored:
            return
        for key in stored:
            try:
                await self._blob_store.delete(key)
            except Exception as e:
                logger.warning(f"Job {job_id}: failed to delete blob {key}: {e}")
        try:
            await self._repository.delete_assets(job_id)
        except Exception as e:
            logger.warning(f"Job {job_id}: failed to delete asset rows: {e}")
        await self._cache.invalidate_job(job_id, owner_id)

    async def _cleanup(self, job_dir: Path) -> None:
        try:
            await asyncio.to_thread(shutil.rmtree, job_dir, ignore_errors=True)
        except Exception as e:
            logger.warning(f"Failed to remove work dir {job_dir}: {e}")

"""Job submission: validate, persist as PENDING, enqueue."""

import logging
from typing import Any, Dict, List, Sequence

from api.enums import JobStatus, OutputFormat
from api.errors import QueueingError, ValidationError, sanitize_error_message, truncate_error
from api.job_queue import JobMessage
from api.job_repository import JobRepository
from api.metrics import JOBS_SUBMITTED_TOTAL
from api.status_cache import StatusCache
from config import ERROR_DETAIL_MAX_LENGTH

logger = logging.getLogger(__name__)

MAX_INPUT_SOURCE_LENGTH = 2048


def validate_formats(requested_formats: Sequence[str]) -> List[str]:
    """
    Check labels against OutputFormat and drop duplicates, keeping submitted order.

    Raises:
        ValidationError: empty list, or any label that is not a supported format
    """
    if not requested_formats:
        raise ValidationError("At least one output format is required")

    supported = {f.value for f in OutputFormat}
    unknown = [f for f in requested_formats if f not in supported]
    if unknown:
        raise ValidationError(
            f"Unsupported output format(s): {', '.join(map(str, unknown))}. "
            f"Supported: {', '.join(sorted(supported))}"
        )

    ordered: List[str] = []
    for label in requested_formats:
        if label not in ordered:
            ordered.append(label)
    return ordered


class JobAdmissionService:
    def __init__(self, repository: JobRepository, queue, cache: StatusCache):
        self._repository = repository
        self._queue = queue
        self._cache = cache

    async def submit(self, owner_id: str, input_source: str, requested_formats: Sequence[str]) -> Dict[str, Any]:
        """
        Create a PENDING job and publish exactly one queue message for it.

        Args:
            owner_id: Submitting principal
            input_source: URL, blob key or local path of the source video
            requested_formats: Output format labels (e.g. ["720p", "480p"])

        Returns:
            The created job row.

        Raises:
            ValidationError: Empty input source or unsupported/empty formats
            QueueingError: The job was persisted but could not be queued; it
                has been marked FAILED so the owner can still see it
        """
        source = (input_source or "").strip()
        if not source:
            JOBS_SUBMITTED_TOTAL.labels(result="rejected").inc()
            raise ValidationError("Input source is required")
        if len(source) > MAX_INPUT_SOURCE_LENGTH:
            JOBS_SUBMITTED_TOTAL.labels(result="rejected").inc()
            raise ValidationError(f"Input source exceeds {MAX_INPUT_SOURCE_LENGTH} characters")
        try:
            formats = validate_formats(requested_formats)
        except ValidationError:
            JOBS_SUBMITTED_TOTAL.labels(result="rejected").inc()
            raise

        job = await self._repository.create(owner_id, source, formats)
        logger.info(f"Job {job['id']} created for owner {owner_id} (formats: {','.join(formats)})")

        try:
            await self._queue.publish(JobMessage(job_id=job["id"], requested_formats=formats))
        except Exception as e:
            logger.error(f"Failed to queue job {job['id']}: {e}")
            try:
                await self._repository.transition(
                    job["id"],
                    [JobStatus.PENDING],
                    JobStatus.FAILED,
                    error_text=truncate_error(
                        f"Failed to queue job: {sanitize_error_message(str(e), log_original=False)}",
                        ERROR_DETAIL_MAX_LENGTH,
                    ),
                )
                await self._cache.invalidate_job(job["id"], owner_id)
            except Exception as mark_error:
                # Row stays PENDING; the caller still gets the queueing error
                logger.error(f"Failed to mark unqueued job {job['id']} FAILED: {mark_error}")
            JOBS_SUBMITTED_TOTAL.labels(result="queue_failed").inc()
            if isinstance(e, QueueingError):
                raise
            raise QueueingError("Failed to queue job for processing") from e

        await self._cache.invalidate_owner(owner_id)
        JOBS_SUBMITTED_TOTAL.labels(result="accepted").inc()
        return job

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from api.enums import AssetType, JobStatus


class JobCreate(BaseModel):
    # Lists are validated against OutputFormat by JobAdmissionService, so a bad
    # label surfaces as ValidationError rather than a pydantic 422
    input_source: str = Field(..., max_length=2048)
    requested_formats: List[str] = Field(default_factory=lambda: ["720p"], max_length=8)


class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: str
    input_source: str
    requested_formats: List[str]
    status: JobStatus
    progress: int
    error_text: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    asset_count: Optional[int] = None

    @field_validator("requested_formats", mode="before")
    @classmethod
    def split_formats(cls, v):
        if isinstance(v, str):
            return [f for f in v.split(",") if f]
        return v


class AssetResponse(BaseModel):
    id: int
    job_id: int
    asset_type: AssetType
    storage_key: str
    size_bytes: Optional[int] = None
    content_type: str
    created_at: datetime


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    totalPages: int


class JobListResponse(BaseModel):
    jobs: List[JobResponse]
    pagination: Pagination


class StatusStats(BaseModel):
    count: int = 0
    avg_progress: int = 0


class QueueStatus(BaseModel):
    activeJobs: int
    maxConcurrentJobs: int
    queuedJobs: int


class ActiveJob(BaseModel):
    id: int
    owner_id: str
    status: JobStatus
    progress: int
    created_at: datetime
    updated_at: datetime


class ProcessingStatus(BaseModel):
    jobCounts: Dict[str, int]
    activeJobs: List[ActiveJob]
    systemHealth: Dict[str, Any]
    queue: QueueStatus


class AssetDownload(BaseModel):
    url: str
    content_type: str
    expires_in: int


class RestartResult(BaseModel):
    restartedCount: int


class CleanupResult(BaseModel):
    deletedCount: int
    olderThanDays: int


class JobUpdateEvent(BaseModel):
    """Payload of one job_update SSE event."""

    jobId: int
    status: JobStatus
    progress: int
    updated_at: datetime

"""
Centralized enums for status values used throughout the application.
Using str-based enums for database compatibility.
"""

from enum import Enum

from config import TRANSCODE_PROFILES


class JobStatus(str, Enum):
    """Lifecycle states of a processing job."""

    PENDING = "PENDING"
    DOWNLOADING = "DOWNLOADING"
    PROCESSING = "PROCESSING"
    UPLOADING = "UPLOADING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class AssetType(str, Enum):
    """Kinds of output artifacts a job produces."""

    TRANSCODE_4K = "TRANSCODE_4K"
    TRANSCODE_1080 = "TRANSCODE_1080"
    TRANSCODE_720 = "TRANSCODE_720"
    TRANSCODE_480 = "TRANSCODE_480"
    GIF = "GIF"
    THUMBNAIL = "THUMBNAIL"
    METADATA_JSON = "METADATA_JSON"


class OutputFormat(str, Enum):
    """Supported target profiles for transcoding (validated once at admission)."""

    UHD_2160P = "2160p"
    FHD_1080P = "1080p"
    HD_720P = "720p"
    SD_480P = "480p"

    @property
    def asset_type(self) -> AssetType:
        return AssetType(TRANSCODE_PROFILES[self.value]["asset_type"])

    @property
    def height(self) -> int:
        return TRANSCODE_PROFILES[self.value]["height"]


class SortBy(str, Enum):
    """Sort columns accepted by job listing."""

    ID = "id"
    CREATED_AT = "created_at"
    UPDATED_AT = "updated_at"
    STATUS = "status"
    PROGRESS = "progress"


class SortOrder(str, Enum):
    ASC = "ASC"
    DESC = "DESC"


class PipelineOutcome(str, Enum):
    """Result of one ProcessingPipeline.execute() call."""

    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"  # job no longer PENDING when the message arrived
    ABANDONED = "abandoned"  # job was reset, cancelled or deleted mid-run


ASSET_CONTENT_TYPES = {
    AssetType.TRANSCODE_4K: "video/mp4",
    AssetType.TRANSCODE_1080: "video/mp4",
    AssetType.TRANSCODE_720: "video/mp4",
    AssetType.TRANSCODE_480: "video/mp4",
    AssetType.GIF: "image/gif",
    AssetType.THUMBNAIL: "image/jpeg",
    AssetType.METADATA_JSON: "application/json",
}

ASSET_EXTENSIONS = {
    "video/mp4": ".mp4",
    "image/gif": ".gif",
    "image/jpeg": ".jpg",
    "application/json": ".json",
}


def content_type_for(asset_type: AssetType) -> str:
    return ASSET_CONTENT_TYPES.get(asset_type, "application/octet-stream")

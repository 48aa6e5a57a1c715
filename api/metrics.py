"""
Prometheus metrics for the vforge API and workers.

Exposed at /metrics in Prometheus text format. Worker processes in redis
mode keep their own registry; scrape them through the multiprocess setup of
your choice or read the scheduler snapshots instead.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, Info, generate_latest

APP_INFO = Info("vforge", "vforge application information")

# =============================================================================
# Admission
# =============================================================================

JOBS_SUBMITTED_TOTAL = Counter(
    "vforge_jobs_submitted_total",
    "Job submissions",
    ["result"],  # accepted, rejected, queue_failed
)

# =============================================================================
# Scheduler / Pipeline
# =============================================================================

JOBS_FINISHED_TOTAL = Counter(
    "vforge_jobs_finished_total",
    "Pipeline executions by outcome",
    ["outcome"],  # completed, failed, skipped, abandoned
)

JOBS_ACTIVE = Gauge(
    "vforge_jobs_active",
    "Pipelines currently holding a concurrency slot",
)

QUEUE_DEPTH = Gauge(
    "vforge_queue_depth",
    "Messages waiting for a concurrency slot",
)

JOB_DURATION_SECONDS = Histogram(
    "vforge_job_duration_seconds",
    "Wall time of one pipeline execution",
    buckets=[5, 15, 30, 60, 120, 300, 600, 1200, 1800, 3600],
)

STAGE_DURATION_SECONDS = Histogram(
    "vforge_stage_duration_seconds",
    "Wall time per pipeline stage",
    ["stage"],  # download, metadata, transcode, thumbnail, preview, upload
    buckets=[0.5, 1, 5, 15, 30, 60, 120, 300, 600, 1800],
)

DOWNLOAD_RETRIES_TOTAL = Counter(
    "vforge_download_retries_total",
    "Download attempts that failed and were retried",
)

# =============================================================================
# Cache / Recovery
# =============================================================================

CACHE_HITS = Counter(
    "vforge_status_cache_hits_total",
    "Status cache hits",
    ["kind"],  # job, owner, processing
)

CACHE_MISSES = Counter(
    "vforge_status_cache_misses_total",
    "Status cache misses",
    ["kind"],
)

STALE_JOBS_RESET_TOTAL = Counter(
    "vforge_stale_jobs_reset_total",
    "Jobs put back to PENDING by the stuck-job sweep",
)


def get_metrics() -> bytes:
    """Current registry in Prometheus text format."""
    return generate_latest()


METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST


def init_app_info(version: str, role: str) -> None:
    APP_INFO.info({"version": version, "app": "vforge", "role": role})

"""
vforge HTTP API.

Callers are identified by the X-User-Id / X-User-Role headers set by the
authenticating proxy in front of this service. Admin routes additionally
require role "admin" and, when VFORGE_ADMIN_API_SECRET is set, a matching
X-Admin-Secret header.

In memory mode (the default) this process also runs the JobScheduler and the
StuckJobReconciler. In redis mode those run in separate `worker.main`
processes and the API only admits jobs and serves status.
"""

import asyncio
import hmac
import logging
import socket
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from sse_starlette.sse import EventSourceResponse

from api.admission import JobAdmissionService
from api.blob_store import BlobStoreError, LocalBlobStore
from api.database import configure_database, create_tables, database
from api.db_retry import DatabaseRetryableError
from api.errors import ForbiddenError, VForgeError
from api.job_queue import create_job_queue
from api.job_repository import JobRepository
from api.job_service import JobService, Principal
from api.metrics import METRICS_CONTENT_TYPE, get_metrics, init_app_info
from api.notifier import StatusNotifier
from api.redis_client import RedisClient, redis_health
from api.scheduler_status import QueueStatusReader, cluster_status_reader, local_status_reader
from api.schemas import (
    AssetDownload,
    AssetResponse,
    CleanupResult,
    JobCreate,
    JobListResponse,
    JobResponse,
    ProcessingStatus,
    RestartResult,
)
from api.status_cache import StatusCache, create_status_cache
from code_version import CODE_VERSION, get_version_info
from config import (
    ADMIN_API_SECRET,
    API_PORT,
    CORS_ALLOWED_ORIGINS,
    JOB_QUEUE_MODE,
    LIST_DEFAULT_LIMIT,
    OLD_JOB_RETENTION_DAYS,
    SHUTDOWN_GRACE_PERIOD,
)

logger = logging.getLogger(__name__)


@dataclass
class AppServices:
    """Everything the routes need, built once per process."""

    repository: JobRepository
    cache: StatusCache
    blob_store: Any
    queue: Any
    admission: JobAdmissionService
    jobs: JobService
    notifier: StatusNotifier
    scheduler: Any = None
    reconciler: Any = None
    tasks: List[asyncio.Task] = field(default_factory=list)


def build_services(
    repository: JobRepository,
    cache: StatusCache,
    blob_store,
    queue,
    queue_status: Optional[QueueStatusReader] = None,
    scheduler=None,
    reconciler=None,
) -> AppServices:
    jobs = JobService(repository, cache, blob_store, queue, queue_status)
    return AppServices(
        repository=repository,
        cache=cache,
        blob_store=blob_store,
        queue=queue,
        admission=JobAdmissionService(repository, queue, cache),
        jobs=jobs,
        notifier=StatusNotifier(jobs),
        scheduler=scheduler,
        reconciler=reconciler,
    )


async def start_services(mode: str = JOB_QUEUE_MODE) -> AppServices:
    """Connect to the database (and Redis) and wire up the services for `mode`."""
    create_tables()
    await database.connect()
    await configure_database()
    if mode == "redis":
        await RedisClient.get_instance()

    repository = JobRepository(database)
    cache = create_status_cache(mode)
    blob_store = LocalBlobStore()
    queue = create_job_queue(mode)
    await queue.initialize(f"api-{socket.gethostname()}")

    if mode == "redis":
        return build_services(repository, cache, blob_store, queue, cluster_status_reader(queue))

    # Imported here so redis-mode API processes never load the worker stack
    from worker.pipeline import ProcessingPipeline
    from worker.reconciler import StuckJobReconciler
    from worker.scheduler import JobScheduler
    from worker.transcode_engine import FFmpegTranscodeEngine

    pipeline = ProcessingPipeline(repository, cache, blob_store, FFmpegTranscodeEngine())
    scheduler = JobScheduler(queue, pipeline, repository, cache)
    reconciler = StuckJobReconciler(repository, queue, cache)
    services = build_services(
        repository, cache, blob_store, queue, local_status_reader(scheduler), scheduler=scheduler, reconciler=reconciler
    )
    services.tasks = [
        asyncio.create_task(scheduler.run(), name="scheduler"),
        asyncio.create_task(reconciler.run(), name="reconciler"),
    ]
    return services


async def stop_services(services: AppServices) -> None:
    if services.reconciler is not None:
        services.reconciler.stop()
    if services.scheduler is not None:
        await services.scheduler.drain(SHUTDOWN_GRACE_PERIOD)
    for task in services.tasks:
        task.cancel()
    await asyncio.gather(*services.tasks, return_exceptions=True)
    await services.queue.close()
    await RedisClient.reset_instance()
    await database.disconnect()


def create_app(services: Optional[AppServices] = None) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        services: Pre-built services (tests). When omitted, the lifespan
            connects to the real database and queue.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is not None:
            app.state.services = services
            yield
            return

        app.state.services = await start_services()
        init_app_info(CODE_VERSION, "api")
        logger.info(f"vforge API started (queue mode: {JOB_QUEUE_MODE})")
        try:
            yield
        finally:
            await stop_services(app.state.services)
            logger.info("vforge API stopped")

    app = FastAPI(title="vforge", description="Video processing job pipeline", lifespan=lifespan)

    @app.exception_handler(VForgeError)
    async def vforge_error_handler(request: Request, exc: VForgeError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc!r}")
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.exception_handler(DatabaseRetryableError)
    async def database_retryable_handler(request: Request, exc: DatabaseRetryableError):
        logger.warning(f"Database temporarily unavailable: {exc}")
        return JSONResponse(
            status_code=503,
            content={"detail": "Database temporarily unavailable, please retry"},
            headers={"Retry-After": "1"},
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ALLOWED_ORIGINS,
        allow_credentials=CORS_ALLOWED_ORIGINS != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_routes(app)
    return app


# =============================================================================
# Dependencies
# =============================================================================


def get_services(request: Request) -> AppServices:
    return request.app.state.services


async def get_principal(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Principal:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return Principal(id=x_user_id.strip(), role=(x_user_role or "user").strip().lower())


async def require_admin(
    principal: Principal = Depends(get_principal),
    x_admin_secret: Optional[str] = Header(None),
) -> Principal:
    if not principal.is_admin:
        raise ForbiddenError("Admin role required")
    if ADMIN_API_SECRET and not hmac.compare_digest(x_admin_secret or "", ADMIN_API_SECRET):
        raise HTTPException(status_code=401, detail="Invalid or missing X-Admin-Secret header")
    return principal


# =============================================================================
# Routes
# =============================================================================


def register_routes(app: FastAPI) -> None:
    @app.get("/health")
    async def health_check(services: AppServices = Depends(get_services)):
        """503 when the database is unreachable; Redis is reported but not required."""
        database_ok = await services.repository.ping()
        return JSONResponse(
            status_code=200 if database_ok else 503,
            content={
                "status": "healthy" if database_ok else "unhealthy",
                "checks": {"database": database_ok, "redis": await redis_health()},
                "queue_mode": services.queue.backend,
                **get_version_info(),
            },
        )

    @app.get("/metrics")
    async def metrics():
        return Response(content=get_metrics(), media_type=METRICS_CONTENT_TYPE)

    # ---- Jobs -------------------------------------------------------------

    @app.post("/api/jobs", status_code=201, response_model=JobResponse)
    async def submit_job(
        body: JobCreate,
        principal: Principal = Depends(get_principal),
        services: AppServices = Depends(get_services),
    ):
        return await services.admission.submit(principal.id, body.input_source, body.requested_formats)

    @app.get("/api/jobs", response_model=JobListResponse)
    async def list_jobs(
        page: Optional[str] = Query(None),
        limit: Optional[str] = Query(None),
        status: Optional[str] = Query(None),
        sort_by: Optional[str] = Query(None),
        sort_order: Optional[str] = Query(None),
        principal: Principal = Depends(get_principal),
        services: AppServices = Depends(get_services),
    ):
        return await services.jobs.list_jobs(
            principal.id, page or 1, limit or LIST_DEFAULT_LIMIT, status, sort_by, sort_order
        )

    @app.get("/api/jobs/stats")
    async def owner_stats(
        principal: Principal = Depends(get_principal),
        services: AppServices = Depends(get_services),
    ) -> dict:
        return await services.jobs.get_owner_stats(principal.id)

    @app.get("/api/jobs/events")
    async def job_events(
        request: Request,
        principal: Principal = Depends(get_principal),
        services: AppServices = Depends(get_services),
    ):
        """Server-Sent Events: job_update per active job, system_stats, heartbeat."""
        return EventSourceResponse(services.notifier.stream(request, principal))

    @app.get("/api/jobs/{job_id}", response_model=JobResponse)
    async def get_job(
        job_id: int,
        principal: Principal = Depends(get_principal),
        services: AppServices = Depends(get_services),
    ):
        return await services.jobs.get_job(job_id, principal)

    @app.post("/api/jobs/{job_id}/cancel", response_model=JobResponse)
    async def cancel_job(
        job_id: int,
        principal: Principal = Depends(get_principal),
        services: AppServices = Depends(get_services),
    ):
        return await services.jobs.cancel_job(job_id, principal)

    @app.delete("/api/jobs/{job_id}", status_code=204)
    async def delete_job(
        job_id: int,
        principal: Principal = Depends(get_principal),
        services: AppServices = Depends(get_services),
    ):
        await services.jobs.delete_job(job_id, principal)
        return Response(status_code=204)

    @app.get("/api/jobs/{job_id}/assets", response_model=List[AssetResponse])
    async def get_assets(
        job_id: int,
        principal: Principal = Depends(get_principal),
        services: AppServices = Depends(get_services),
    ):
        return await services.jobs.get_assets(job_id, principal)

    @app.get("/api/jobs/{job_id}/assets/{asset_id}/download", response_model=AssetDownload)
    async def get_asset_download(
        job_id: int,
        asset_id: int,
        principal: Principal = Depends(get_principal),
        services: AppServices = Depends(get_services),
    ):
        return await services.jobs.get_asset_download(job_id, asset_id, principal)

    # ---- Admin ------------------------------------------------------------

    @app.get("/api/admin/processing-status", response_model=ProcessingStatus)
    async def processing_status(
        _: Principal = Depends(require_admin),
        services: AppServices = Depends(get_services),
    ):
        return await services.jobs.get_processing_status()

    @app.post("/api/admin/restart-failed", response_model=RestartResult)
    async def restart_failed(
        _: Principal = Depends(require_admin),
        services: AppServices = Depends(get_services),
    ):
        return await services.jobs.restart_failed_jobs()

    @app.post("/api/admin/cleanup", response_model=CleanupResult)
    async def cleanup_old_jobs(
        older_than_days: int = Query(OLD_JOB_RETENTION_DAYS),
        _: Principal = Depends(require_admin),
        services: AppServices = Depends(get_services),
    ):
        return await services.jobs.cleanup_old_jobs(older_than_days)

    @app.get("/api/admin/jobs", response_model=JobListResponse)
    async def admin_list_jobs(
        owner_id: Optional[str] = Query(None),
        page: Optional[str] = Query(None),
        limit: Optional[str] = Query(None),
        status: Optional[str] = Query(None),
        sort_by: Optional[str] = Query(None),
        sort_order: Optional[str] = Query(None),
        _: Principal = Depends(require_admin),
        services: AppServices = Depends(get_services),
    ):
        return await services.jobs.list_jobs(
            owner_id, page or 1, limit or LIST_DEFAULT_LIMIT, status, sort_by, sort_order
        )

    @app.delete("/api/admin/jobs/{job_id}", status_code=204)
    async def admin_delete_job(
        job_id: int,
        principal: Principal = Depends(require_admin),
        services: AppServices = Depends(get_services),
    ):
        await services.jobs.delete_job(job_id, principal)
        return Response(status_code=204)

    # ---- Blobs ------------------------------------------------------------

    @app.get("/blobs/{key:path}")
    async def download_blob(
        key: str,
        expires: int = Query(...),
        signature: str = Query(...),
        services: AppServices = Depends(get_services),
    ):
        """Serve a stored object for a valid, unexpired presigned URL."""
        store = services.blob_store
        if not store.verify_signature(key, expires, signature):
            raise HTTPException(status_code=403, detail="Invalid or expired signature")
        try:
            path = store.path_for(key)
        except BlobStoreError:
            raise HTTPException(status_code=404, detail="Not found")
        if not await asyncio.to_thread(path.is_file):
            raise HTTPException(status_code=404, detail="Not found")
        return FileResponse(path)


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    uvicorn.run(app, host="0.0.0.0", port=API_PORT)

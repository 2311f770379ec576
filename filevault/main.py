from fastapi import APIRouter, FastAPI, UploadFile, File, Depends, Query, Request
from fastapi.responses import FileResponse, JSONResponse
from loguru import logger
from pathlib import Path
from typing import Optional

from . import logger as logging_setup
from .blobs import BlobStore
from .deps import get_coordinator, get_retrieval, get_stats, require_api_key
from .exceptions import FileVaultError, PayloadTooLarge, ValidationError
from .ingest import IngestionCoordinator
from .metrics import FileMetrics
from .retrieval import RetrievalService
from .schemas import DeleteResponse, FileList, FileRead, Health, StorageStats, UploadResponse
from .settings import Settings, settings as default_settings
from .stats import StatsAggregator
from .store import MetadataStore, build_engine


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the application and every component it owns.

    Components are constructed here and shared through ``app.state``; nothing
    below this function reaches for module-level instances.
    """
    settings = settings or default_settings
    logging_setup.configure(settings.LOG_LEVEL, settings.LOG_DIR, settings.LOG_TO_FILE)

    engine = build_engine(settings.DATABASE_URL, settings.LOCK_TIMEOUT_SECONDS, settings.DB_POOL_SIZE)
    store = MetadataStore(engine, lock_timeout=settings.LOCK_TIMEOUT_SECONDS)
    blobs = BlobStore(settings.STORAGE_DIR)
    metrics = FileMetrics()
    stats = StatsAggregator(store, metrics)

    app = FastAPI(title="filevault")
    app.state.settings = settings
    app.state.store = store
    app.state.blobs = blobs
    app.state.stats = stats
    app.state.metrics = metrics
    app.state.retrieval = RetrievalService(store, blobs, metrics)
    app.state.coordinator = IngestionCoordinator(
        store,
        blobs,
        stats,
        max_upload_bytes=settings.MAX_UPLOAD_BYTES,
        instance_id=settings.INSTANCE_ID,
        uploaded_by=settings.UPLOADED_BY,
        metrics=metrics,
    )

    @app.on_event("startup")
    def startup_event():
        # Ensure storage dir exists and DB initialized
        blobs.ensure_dir()
        store.create_schema()
        logger.info("filevault instance {} storing blobs in {}", settings.INSTANCE_ID, blobs.base_dir)

    @app.on_event("shutdown")
    async def shutdown_event():
        await stats.wait_idle()
        engine.dispose()

    @app.exception_handler(FileVaultError)
    async def filevault_error_handler(request: Request, exc: FileVaultError):
        if exc.status_code >= 500:
            logger.error("{} {} failed: {!r}", request.method, request.url.path, exc)
        headers = {"Retry-After": "1"} if exc.retryable else None
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.message, "kind": exc.kind},
            headers=headers,
        )

    app.include_router(_build_routes())
    return app


def _build_routes():
    router = APIRouter()
    protected = [Depends(require_api_key)]

    @router.post("/files", response_model=UploadResponse, status_code=201, dependencies=protected)
    async def upload(
        file: Optional[UploadFile] = File(None),
        coordinator: IngestionCoordinator = Depends(get_coordinator),
    ):
        try:
            safe_name = _check_upload(file, coordinator.max_upload_bytes)
        except FileVaultError:
            coordinator.metrics.record("upload", "error")
            raise
        content = await file.read(coordinator.max_upload_bytes + 1)

        result = await coordinator.ingest(content, safe_name, file.content_type)
        record = result.record
        return UploadResponse(
            message="Duplicate content, existing file returned" if result.duplicate else "File uploaded successfully",
            id=record.id,
            filename=safe_name,
            size=record.size_bytes,
            type=record.content_type,
            checksum=record.checksum,
            uploaded_at=record.uploaded_at,
            duplicate=result.duplicate,
        )

    @router.get("/files", response_model=FileList, dependencies=protected)
    def files_list(
        limit: int = Query(100),
        offset: int = Query(0),
        retrieval: RetrievalService = Depends(get_retrieval),
    ):
        records = retrieval.list_files(limit=limit, offset=offset)
        return FileList(
            files=[FileRead.from_record(r) for r in records],
            count=len(records),
            total_size=sum(r.size_bytes for r in records),
            limit=limit,
            offset=offset,
        )

    @router.get("/files/search", response_model=FileList, dependencies=protected)
    def files_search(
        q: str = Query(""),
        limit: int = Query(50),
        retrieval: RetrievalService = Depends(get_retrieval),
    ):
        records = retrieval.search(q, limit=limit)
        return FileList(files=[FileRead.from_record(r) for r in records], count=len(records), query=q)

    @router.get("/files/recent", response_model=FileList, dependencies=protected)
    def files_recent(limit: int = Query(10), retrieval: RetrievalService = Depends(get_retrieval)):
        records = retrieval.recent(limit=limit)
        return FileList(files=[FileRead.from_record(r) for r in records], count=len(records))

    @router.get("/files/stats", response_model=StorageStats, dependencies=protected)
    async def files_stats(stats: StatsAggregator = Depends(get_stats)):
        return await stats.snapshot()

    @router.get("/files/{filename}", dependencies=protected)
    def download(filename: str, retrieval: RetrievalService = Depends(get_retrieval)):
        record, path = retrieval.open_download(filename)
        return FileResponse(
            path=str(path),
            filename=record.display_name,
            media_type=record.content_type,
            headers={
                "X-File-ID": record.id,
                "X-File-Checksum": record.checksum,
                "X-Uploaded-At": record.uploaded_at.isoformat(),
                "X-Uploaded-Instance": record.origin_instance,
            },
        )

    @router.delete("/files/{filename}", response_model=DeleteResponse, dependencies=protected)
    async def delete(filename: str, coordinator: IngestionCoordinator = Depends(get_coordinator)):
        await coordinator.delete(filename)
        return DeleteResponse(message="File deleted successfully", filename=filename)

    @router.get("/health", response_model=Health)
    def health(request: Request):
        instance = request.app.state.settings.INSTANCE_ID
        try:
            latency = request.app.state.store.ping()
        except Exception as exc:
            logger.opt(exception=True).warning("health check failed")
            return JSONResponse(
                status_code=503,
                content=Health(status="error", instance=instance, database="error", error=str(exc)).model_dump(
                    by_alias=True, exclude_none=True
                ),
            )
        return Health(status="ok", instance=instance, database="connected", latency_ms=round(latency, 2))

    return router


def _check_upload(file: Optional[UploadFile], limit: int) -> str:
    if file is None or not file.filename:
        raise ValidationError("No file provided")
    # names become URL path segments on download
    safe_name = Path(file.filename).name
    if safe_name != file.filename:
        raise ValidationError("Invalid filename", {"filename": file.filename})
    if file.size is not None and file.size > limit:
        raise PayloadTooLarge(f"file too large (max {limit} bytes)", {"filename": safe_name, "limit": limit})
    return safe_name

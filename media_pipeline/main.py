"""FastAPI application entry point."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import FileResponse

from media_pipeline.core.config import settings
from media_pipeline.core.database import async_session_maker, init_models
from media_pipeline.core.logging import setup_logging
from media_pipeline.core.metrics import get_metrics, get_metrics_content_type, set_app_info
from media_pipeline.core.middleware import (
    CorrelationIdMiddleware,
    MetricsMiddleware,
    RequestLoggingMiddleware,
)
from media_pipeline.core.storage import InvalidStorageKeyError, LocalObjectStore
from media_pipeline.modules.delivery.router import router as stream_router
from media_pipeline.modules.media.keys import StorageKeyManager, build_key_manager
from media_pipeline.modules.media.router import router as media_router
from media_pipeline.modules.transcoding.mediaconvert import build_transcoder
from media_pipeline.modules.transcoding.router import router as transcode_router
from media_pipeline.modules.transcoding.service import TranscodeOrchestrator, build_orchestrator

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the collaborators that were not injected, and close them on exit."""
    if settings.DB_CREATE_TABLES:
        await init_models()

    owned_transcoder = None
    if getattr(app.state, "key_manager", None) is None:
        app.state.key_manager = build_key_manager()
    if getattr(app.state, "orchestrator", None) is None:
        owned_transcoder = build_transcoder()
        app.state.orchestrator = build_orchestrator(async_session_maker, owned_transcoder)

    logger.info("Media pipeline started", extra={"version": settings.VERSION})
    try:
        yield
    finally:
        if owned_transcoder is not None:
            await owned_transcoder.close()


def create_app(
    *,
    key_manager: Optional[StorageKeyManager] = None,
    orchestrator: Optional[TranscodeOrchestrator] = None,
    delivery_ttl_seconds: Optional[int] = None,
) -> FastAPI:
    """Create the application, optionally around pre-built collaborators."""
    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        description="Adaptive media delivery: uploads, transcoding and HLS/DASH playback.",
        openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "health", "description": "Health check endpoints"},
            {"name": "media", "description": "Asset uploads, subtitles and posters"},
            {"name": "transcode", "description": "Transcode jobs and encoder notifications"},
            {"name": "stream", "description": "Playback descriptors and manifests"},
        ],
    )

    app.state.key_manager = key_manager
    app.state.orchestrator = orchestrator
    app.state.delivery_ttl_seconds = delivery_ttl_seconds or settings.delivery_ttl_seconds

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(MetricsMiddleware)

    app.include_router(media_router, prefix=settings.API_V1_PREFIX)
    app.include_router(transcode_router, prefix=settings.API_V1_PREFIX)
    app.include_router(stream_router, prefix=settings.API_V1_PREFIX)

    @app.get("/health", tags=["health"])
    async def health_check(request: Request) -> dict[str, str]:
        """Health status, including object storage reachability."""
        keys: Optional[StorageKeyManager] = request.app.state.key_manager
        storage_ok = keys is not None and await asyncio.to_thread(keys.store.health_check)
        return {
            "status": "healthy" if storage_ok else "degraded",
            "storage": "ok" if storage_ok else "unavailable",
        }

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        return Response(content=get_metrics(), media_type=get_metrics_content_type())

    @app.get("/media/{key:path}", include_in_schema=False)
    async def serve_local_object(key: str, exp: int, sig: str, request: Request):
        """Serve objects of the local store behind their signed URLs."""
        store = request.app.state.key_manager.store
        if not isinstance(store, LocalObjectStore):
            raise HTTPException(status_code=404, detail="Not found")
        try:
            valid = store.verify(key, exp, sig)
        except InvalidStorageKeyError:
            raise HTTPException(status_code=400, detail="Invalid key")
        if not valid:
            raise HTTPException(status_code=403, detail="Signature invalid or expired")

        path = store.path_for(key)
        if not path.is_file():
            raise HTTPException(status_code=404, detail="Not found")
        return FileResponse(path)

    return app


setup_logging(
    level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
    json_format=settings.LOG_JSON,
    include_stack_trace=True,
)

set_app_info(
    version=settings.VERSION,
    environment="development" if settings.DEBUG else "production",
)

app = create_app()

"""
BCA Field Sync - offline capture and sync API for building condition assessments.
Queues assessments, deficiencies, photos and voice notes locally and pushes
them to the central BCA service whenever the device is online.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import capture, device, recordings, sync
from .core.activity_middleware import ActivityLogMiddleware
from .core.config import settings
from .services.coordinator import SyncCoordinator
from .services.local_store import (
    InvalidTransitionError,
    RecordNotFoundError,
    StorageError,
    StorageQuotaError,
)

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def create_app(coordinator: Optional[SyncCoordinator] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.coordinator = coordinator or SyncCoordinator()
        await app.state.coordinator.startup()
        yield
        await app.state.coordinator.shutdown()

    app = FastAPI(
        title="BCA Field Sync API",
        description=(
            "Offline-first capture of building condition assessments with "
            "photo compression, voice-note transcription and background sync."
        ),
        version=settings.VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(ActivityLogMiddleware)

    @app.exception_handler(StorageQuotaError)
    async def quota_handler(request: Request, exc: StorageQuotaError):
        logger.warning("Storage quota exceeded on %s: %s", request.url.path, exc)
        return _error(status.HTTP_507_INSUFFICIENT_STORAGE, exc)

    @app.exception_handler(StorageError)
    async def storage_handler(request: Request, exc: StorageError):
        logger.error("Local storage failure on %s: %s", request.url.path, exc)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, exc)

    @app.exception_handler(RecordNotFoundError)
    async def not_found_handler(request: Request, exc: RecordNotFoundError):
        return _error(status.HTTP_404_NOT_FOUND, exc)

    @app.exception_handler(InvalidTransitionError)
    async def transition_handler(request: Request, exc: InvalidTransitionError):
        return _error(status.HTTP_409_CONFLICT, exc)

    @app.exception_handler(ValueError)
    async def value_handler(request: Request, exc: ValueError):
        return _error(status.HTTP_400_BAD_REQUEST, exc)

    app.include_router(capture.router, prefix="/api/v1")
    app.include_router(recordings.router, prefix="/api/v1")
    app.include_router(sync.router, prefix="/api/v1")
    app.include_router(device.router, prefix="/api/v1")

    @app.get("/health")
    def health_check():
        return {"status": "healthy", "service": settings.APP_NAME, "version": settings.VERSION}

    return app


app = create_app()

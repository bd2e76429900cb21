"""
Photo Upload & Enrichment Pipeline - Main Application

FastAPI application with:
- API versioning (/api/v1/)
- Structured logging with structlog
- Prometheus metrics
- Global exception handling
- Storage abstraction (local filesystem, cloud ready)
"""

import time
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from photo_pipeline.core.config import settings
from photo_pipeline.core.database import create_db_and_tables, engine
from photo_pipeline.core.logging import setup_logging, get_logger
from photo_pipeline.core.exceptions import register_exception_handlers
from photo_pipeline.core.metrics import set_app_info, http_requests_total, http_request_duration_seconds
from photo_pipeline.api.v1 import api_v1_router
from photo_pipeline.api.dependencies import build_upload_service


# =============================================================================
# Initialize Logging
# =============================================================================
setup_logging(
    log_level=settings.LOG_LEVEL,
    json_format=settings.LOG_FORMAT_JSON
)
logger = get_logger(__name__)


# =============================================================================
# Lifespan Handler
# =============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - startup and shutdown."""
    startup_start = time.time()

    logger.info(
        "application_starting",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        simulation=settings.USE_SIMULATION
    )

    await create_db_and_tables()
    logger.info("database_initialized", url=settings.DATABASE_URL)

    if getattr(app.state, "upload_service", None) is None:
        app.state.upload_service = build_upload_service()

    set_app_info(
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    logger.info("application_ready", startup_time_seconds=time.time() - startup_start)

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await app.state.upload_service.scheduler.shutdown()
    await engine.dispose()
    logger.info("application_shutdown_complete")


# =============================================================================
# Create FastAPI Application
# =============================================================================
def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        description="""
        Photo upload pipeline for resale listings:

        - **Validation**: type, size and dimension checks before any storage write
        - **Storage**: originals and JPEG thumbnails per size class
        - **AI Enrichment**: listing draft (title, category, condition, price range)
        - **Background Removal**: opt-in transparent PNG variant
        - **Observability**: Structured logging, Prometheus metrics

        ## Pipeline Stages

        Validating → Uploading → Deriving → Enriching → RemovingBackground →
        Finalizing → Completed (or Failed, with storage cleaned up)
        """,
        version=settings.APP_VERSION,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json"
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS.split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_timing(request: Request, call_next):
        """Track request timing for metrics."""
        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time

        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint
        ).observe(duration)

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status=response.status_code
        ).inc()

        response.headers["X-Process-Time"] = str(duration)
        return response

    register_exception_handlers(app)

    app.include_router(api_v1_router)

    # Serve stored originals, thumbnails and variants
    storage_dir = Path(settings.LOCAL_STORAGE_PATH)
    storage_dir.mkdir(parents=True, exist_ok=True)
    app.mount(settings.STORAGE_PUBLIC_URL, StaticFiles(directory=storage_dir), name="storage")

    @app.get("/", tags=["root"])
    async def root():
        """Root endpoint with API information."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "docs": "/api/docs",
            "api_v1": "/api/v1",
            "uploads": "/api/v1/uploads",
            "metrics": "/api/v1/metrics"
        }

    @app.get("/health", tags=["health"])
    async def health():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": settings.APP_VERSION
        }

    return app


app = create_app()


# =============================================================================
# Development Server
# =============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "photo_pipeline.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )

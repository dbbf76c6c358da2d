"""
FastAPI application initialization
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import health, lei, sync
from core.config import settings
from core.exceptions import (
    IngestionError,
    NotFoundError,
    JobAlreadyRunningError,
    SnapshotStateError,
    RetryExhaustedError,
)
from core.logging import setup_logging
import logging
from api.middleware import RequestContextMiddleware
from ingestion.scheduler import IngestionScheduler
from schemas.api import ErrorResponse

setup_logging()

logger = logging.getLogger(__name__)

# Seconds shutdown waits for in-flight runs to reach a batch boundary
SHUTDOWN_GRACE_PERIOD = 30.0

# Create FastAPI app
app = FastAPI(
    title="LEI Ingestion API",
    description="GLEIF LEI ingestion pipeline: records, audit history, sync control and progress",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

# Initialize Scheduler
app.state.scheduler = IngestionScheduler()


# Include routers
app.include_router(health.router)
app.include_router(lei.router)
app.include_router(sync.router)


def _error_response(status_code: int, code: str, error: IngestionError) -> JSONResponse:
    body = ErrorResponse(error=type(error).__name__, detail=error.message, code=code)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return _error_response(404, "not_found", exc)


@app.exception_handler(JobAlreadyRunningError)
async def already_running_handler(request: Request, exc: JobAlreadyRunningError):
    return _error_response(409, "conflict", exc)


@app.exception_handler(SnapshotStateError)
async def snapshot_state_handler(request: Request, exc: SnapshotStateError):
    return _error_response(409, "conflict", exc)


@app.exception_handler(RetryExhaustedError)
async def retry_exhausted_handler(request: Request, exc: RetryExhaustedError):
    return _error_response(422, "retry_exhausted", exc)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting LEI Ingestion API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    # Start Scheduler (raises ConfigurationError on a bad schedule)
    if settings.LEI_SCHEDULER_ENABLED:
        app.state.scheduler.start()
    else:
        logger.info("Scheduler disabled (LEI_SCHEDULER_ENABLED=false)")


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down LEI Ingestion API")
    scheduler = app.state.scheduler
    scheduler.stop()
    await scheduler.wait_for_runs(timeout=SHUTDOWN_GRACE_PERIOD)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "LEI Ingestion API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "records": "/api/v1/lei/records",
            "status": "/api/v1/lei/status/{job_kind}",
            "sync": "/api/v1/lei/sync/{full|delta}",
            "snapshots": "/api/v1/lei/snapshots/{snapshot_id}"
        }
    }

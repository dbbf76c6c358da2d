"""
Manual sync triggers and retention cleanup
"""

from fastapi import APIRouter, Depends, Request
import logging

from api.dependencies import get_scheduler
from ingestion.scheduler import IngestionScheduler
from models.base import SnapshotKind
from schemas.api import SyncAcceptedResponse, CleanupResponse

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/lei", tags=["Sync"])


@router.post("/sync/full", response_model=SyncAcceptedResponse, status_code=202)
async def trigger_full_sync(request: Request, scheduler: IngestionScheduler = Depends(get_scheduler)):
    """Start a FULL sync now. 409 if a sync is already running."""
    request_id = getattr(request.state, "request_id", "-")
    logger.info(f"[{request_id}] POST /sync/full")

    await scheduler.trigger_full()
    return SyncAcceptedResponse(message="FULL sync started", job_kind=SnapshotKind.FULL)


@router.post("/sync/delta", response_model=SyncAcceptedResponse, status_code=202)
async def trigger_delta_sync(request: Request, scheduler: IngestionScheduler = Depends(get_scheduler)):
    """Start a DELTA sync now. 409 if a sync is already running."""
    request_id = getattr(request.state, "request_id", "-")
    logger.info(f"[{request_id}] POST /sync/delta")

    await scheduler.trigger_delta()
    return SyncAcceptedResponse(message="DELTA sync started", job_kind=SnapshotKind.DELTA)


@router.post("/cleanup", response_model=CleanupResponse)
async def run_cleanup(scheduler: IngestionScheduler = Depends(get_scheduler)):
    """Run retention cleanup immediately"""
    removed = await scheduler.run_cleanup()
    return CleanupResponse(removed=removed)

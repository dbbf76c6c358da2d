"""
Health check endpoint with database and ingestion job status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from api.dependencies import get_db, get_scheduler
from ingestion.scheduler import IngestionScheduler
from ingestion.status import IngestionStatusService
from models.base import JobState
from schemas.api import HealthCheckResponse
from datetime import datetime
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    scheduler: IngestionScheduler = Depends(get_scheduler),
):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Job status for FULL and DELTA
    - "degraded" when a job kind is FAILED, "unhealthy" without a database
    """
    db_connected = False

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")

    jobs = []
    if db_connected:
        try:
            jobs = await IngestionStatusService(db, scheduler=scheduler).get_all_job_statuses()
        except Exception as e:
            logger.error(f"Failed to fetch job statuses: {str(e)}")

    if not db_connected:
        status = "unhealthy"
    elif any(job.status == JobState.FAILED.value for job in jobs):
        status = "degraded"
    else:
        status = "healthy"

    return HealthCheckResponse(
        status=status,
        timestamp=datetime.utcnow(),
        database_connected=db_connected,
        jobs=jobs,
    )

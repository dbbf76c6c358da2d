"""
FastAPI dependencies
"""

from typing import AsyncGenerator
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import async_session_maker
from ingestion.scheduler import IngestionScheduler
from ingestion.status import IngestionStatusService


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped database session"""
    async with async_session_maker() as session:
        yield session


def get_scheduler(request: Request) -> IngestionScheduler:
    """The scheduler owned by the running application"""
    return request.app.state.scheduler


def get_status_service(
    db: AsyncSession = Depends(get_db),
    scheduler: IngestionScheduler = Depends(get_scheduler),
) -> IngestionStatusService:
    return IngestionStatusService(db, scheduler=scheduler)

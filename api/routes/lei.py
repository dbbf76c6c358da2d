"""
LEI records, audit history, job status and snapshot endpoints
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from typing import List, Optional, Tuple
import logging
import uuid

from api.dependencies import get_status_service
from ingestion.status import IngestionStatusService, SORTABLE_FIELDS, SORT_ORDERS, DEFAULT_SORT_FIELD
from models.base import SnapshotKind
from schemas.api import (
    JobStatusResponse,
    SnapshotFileResponse,
    SyncAcceptedResponse,
    LEIRecordResponse,
    LEIRecordAuditResponse,
    LEIRecordListResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/lei", tags=["LEI"])


def parse_job_kind(value: str) -> SnapshotKind:
    """Path parameter to SnapshotKind; 400 for anything else"""
    try:
        return SnapshotKind(value.strip().upper())
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid job kind {value!r}, expected one of: FULL, DELTA"
        )


def parse_snapshot_id(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid snapshot id {value!r}")


def parse_record_id(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid record id {value!r}")


def parse_sort(sort_by: str, sort_order: str) -> Tuple[str, str]:
    """Whitelisted sort column and direction; 400 for anything else"""
    sort_by = sort_by.strip().lower()
    sort_order = sort_order.strip().lower()
    if sort_by not in SORTABLE_FIELDS:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid sort field {sort_by!r}, expected one of: {', '.join(SORTABLE_FIELDS)}"
        )
    if sort_order not in SORT_ORDERS:
        raise HTTPException(status_code=400, detail=f"Invalid sort order {sort_order!r}, expected asc or desc")
    return sort_by, sort_order


# ============================================================================
# Records
# ============================================================================

@router.get("/records", response_model=LEIRecordListResponse)
async def list_records(
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=1000, description="Items per page"),
    search: Optional[str] = Query(None, description="Search in legal name and LEI"),
    country: Optional[str] = Query(None, description="Legal address country (ISO alpha-2)"),
    registration_status: Optional[str] = Query(None, description="e.g. ISSUED, LAPSED"),
    entity_status: Optional[str] = Query(None, description="e.g. ACTIVE, INACTIVE"),
    entity_category: Optional[str] = Query(None, description="e.g. GENERAL, FUND, BRANCH"),
    sort_by: str = Query(DEFAULT_SORT_FIELD, description=f"One of: {', '.join(SORTABLE_FIELDS)}"),
    sort_order: str = Query("desc", description="asc or desc"),
    service: IngestionStatusService = Depends(get_status_service),
):
    """Paginated, filtered and sorted LEI records"""
    sort_by, sort_order = parse_sort(sort_by, sort_order)
    return await service.list_records(
        page=page,
        page_size=page_size,
        search=search,
        country=country,
        registration_status=registration_status,
        entity_status=entity_status,
        entity_category=entity_category,
        sort_by=sort_by,
        sort_order=sort_order,
    )


@router.get("/countries", response_model=List[str])
async def list_countries(service: IngestionStatusService = Depends(get_status_service)):
    """Distinct legal address countries present in the record store"""
    return await service.list_countries()


@router.get("/records/id/{record_id}", response_model=LEIRecordResponse)
async def get_record_by_id(record_id: str, service: IngestionStatusService = Depends(get_status_service)):
    return await service.get_record_by_id(parse_record_id(record_id))


@router.get("/records/{lei}", response_model=LEIRecordResponse)
async def get_record(lei: str, service: IngestionStatusService = Depends(get_status_service)):
    return await service.get_record(lei)


@router.get("/records/{lei}/audit", response_model=List[LEIRecordAuditResponse])
async def get_record_audit(
    lei: str,
    limit: int = Query(50, ge=1, le=500, description="Maximum number of entries"),
    service: IngestionStatusService = Depends(get_status_service),
):
    """Audit history for one LEI, newest first"""
    return await service.get_audit_history(lei, limit=limit)


# ============================================================================
# Job status / snapshots
# ============================================================================

@router.get("/status/{job_kind}", response_model=JobStatusResponse)
async def get_job_status(job_kind: str, service: IngestionStatusService = Depends(get_status_service)):
    """
    Run state for FULL or DELTA.

    Includes the current (or most recent) snapshot with its counters,
    checkpoint, failure category and percent complete.
    """
    return await service.get_job_status(parse_job_kind(job_kind))


@router.get("/snapshots/{snapshot_id}", response_model=SnapshotFileResponse)
async def get_snapshot(snapshot_id: str, service: IngestionStatusService = Depends(get_status_service)):
    return await service.get_snapshot(parse_snapshot_id(snapshot_id))


@router.post("/snapshots/{snapshot_id}/resume", response_model=SyncAcceptedResponse, status_code=202)
async def resume_snapshot(
    request: Request,
    snapshot_id: str,
    service: IngestionStatusService = Depends(get_status_service),
):
    """
    Re-claim a failed or interrupted snapshot and continue from its checkpoint.

    Returns:
    - 202 when the run was started in the background
    - 404 unknown snapshot, 409 already completed or job running,
      422 retries exhausted or failure not retryable
    """
    parsed_id = parse_snapshot_id(snapshot_id)
    request_id = getattr(request.state, "request_id", "-")
    logger.info(f"[{request_id}] Resume requested for snapshot {parsed_id}")

    await service.resume(parsed_id)
    snapshot = await service.get_snapshot(parsed_id)
    return SyncAcceptedResponse(
        message=f"Resumed snapshot {parsed_id} (attempt {snapshot.retry_count}/{snapshot.max_retries})",
        job_kind=snapshot.kind,
        snapshot_id=parsed_id,
    )

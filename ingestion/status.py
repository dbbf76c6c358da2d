"""
Status/Resume facade: read-only progress queries over persisted state plus
the operator resume action.

Nothing here waits on an in-flight run; every answer comes from the
SnapshotFile / JobStatus rows as last committed by the processor.
"""

from typing import List, Optional
import logging
import math
import uuid

from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import (
    JobStatusNotFoundError,
    SnapshotNotFoundError,
    RecordNotFoundError,
)
from ingestion.store import SnapshotStore, JobStatusStore
from models.base import SnapshotKind
from models.job_status import JobStatus
from models.lei_record import LEIRecord, LEIRecordAudit
from schemas.api import (
    JobStatusResponse,
    SnapshotFileResponse,
    LEIRecordResponse,
    LEIRecordAuditResponse,
    LEIRecordListResponse,
    PaginationMetadata,
)

logger = logging.getLogger(__name__)

# Columns the record list may be ordered by
SORTABLE_FIELDS = {
    "lei": LEIRecord.lei,
    "legal_name": LEIRecord.legal_name,
    "entity_status": LEIRecord.entity_status,
    "entity_category": LEIRecord.entity_category,
    "legal_address_country": LEIRecord.legal_address_country,
    "last_update_date": LEIRecord.last_update_date,
    "updated_at": LEIRecord.updated_at,
}
SORT_ORDERS = ("asc", "desc")
DEFAULT_SORT_FIELD = "updated_at"


class IngestionStatusService:
    """Answer status, snapshot, record and audit queries"""

    def __init__(self, db_session: AsyncSession, scheduler=None):
        self.db = db_session
        self.snapshots = SnapshotStore(db_session)
        self.jobs = JobStatusStore(db_session)
        self.scheduler = scheduler

    # ------------------------------------------------------------------
    # Job status / snapshots
    # ------------------------------------------------------------------

    async def get_job_status(self, kind: SnapshotKind) -> JobStatusResponse:
        """
        Job state plus the current (or most recent) snapshot of ``kind``.

        Raises:
            JobStatusNotFoundError: The job kind has never been initialised
        """
        job = await self.jobs.get(kind)
        if job is None:
            raise JobStatusNotFoundError(
                f"No status recorded for {kind.value} yet",
                context={"job_kind": kind.value}
            )
        return await self._job_response(job)

    async def get_all_job_statuses(self) -> List[JobStatusResponse]:
        return [await self._job_response(job) for job in await self.jobs.get_all()]

    async def _job_response(self, job: JobStatus) -> JobStatusResponse:
        snapshot = None
        if job.current_snapshot_id is not None:
            snapshot = await self.snapshots.get(job.current_snapshot_id)
        if snapshot is None:
            snapshot = await self.snapshots.get_latest(job.job_kind)

        snapshot_response = SnapshotFileResponse.from_orm(snapshot) if snapshot else None
        return JobStatusResponse(
            job_kind=job.job_kind,
            status=job.status,
            current_snapshot_id=job.current_snapshot_id,
            error_message=job.error_message,
            failure_category=snapshot.failure_category if snapshot else None,
            percent_complete=snapshot.percent_complete if snapshot else 0.0,
            last_run_at=job.last_run_at,
            last_success_at=job.last_success_at,
            snapshot=snapshot_response,
        )

    async def get_snapshot(self, snapshot_id: uuid.UUID) -> SnapshotFileResponse:
        snapshot = await self.snapshots.get(snapshot_id)
        if snapshot is None:
            raise SnapshotNotFoundError(
                f"Snapshot {snapshot_id} not found",
                context={"snapshot_id": str(snapshot_id)}
            )
        return SnapshotFileResponse.from_orm(snapshot)

    async def resume(self, snapshot_id: uuid.UUID) -> uuid.UUID:
        """Delegates to IngestionScheduler.resume"""
        if self.scheduler is None:
            raise RuntimeError("Resume requires a running scheduler")
        return await self.scheduler.resume(snapshot_id)

    # ------------------------------------------------------------------
    # Records / audit history
    # ------------------------------------------------------------------

    async def get_record(self, lei: str) -> LEIRecordResponse:
        lei = lei.strip().upper()
        result = await self.db.execute(select(LEIRecord).where(LEIRecord.lei == lei))
        record = result.scalar_one_or_none()
        if record is None:
            raise RecordNotFoundError(f"LEI {lei} not found", context={"lei": lei})
        return LEIRecordResponse.from_orm(record)

    async def get_record_by_id(self, record_id: uuid.UUID) -> LEIRecordResponse:
        record = await self.db.get(LEIRecord, record_id)
        if record is None:
            raise RecordNotFoundError(
                f"LEI record {record_id} not found", context={"record_id": str(record_id)}
            )
        return LEIRecordResponse.from_orm(record)

    async def list_countries(self) -> List[str]:
        """Distinct legal address countries, alphabetical"""
        result = await self.db.execute(
            select(LEIRecord.legal_address_country)
            .where(LEIRecord.legal_address_country.is_not(None))
            .distinct()
            .order_by(LEIRecord.legal_address_country)
        )
        return list(result.scalars().all())

    async def list_records(
        self,
        page: int = 1,
        page_size: int = 50,
        search: Optional[str] = None,
        country: Optional[str] = None,
        registration_status: Optional[str] = None,
        entity_status: Optional[str] = None,
        entity_category: Optional[str] = None,
        sort_by: str = DEFAULT_SORT_FIELD,
        sort_order: str = "desc",
    ) -> LEIRecordListResponse:
        """
        Paginated records, newest update first unless ``sort_by`` says otherwise.

        Raises:
            ValueError: ``sort_by`` not in SORTABLE_FIELDS or ``sort_order``
                not asc/desc
        """
        if sort_by not in SORTABLE_FIELDS:
            raise ValueError(f"Cannot sort by {sort_by!r}")
        if sort_order not in SORT_ORDERS:
            raise ValueError(f"Invalid sort order {sort_order!r}")

        filters = []
        if search:
            filters.append(or_(
                LEIRecord.legal_name.ilike(f"%{search}%"),
                LEIRecord.lei.ilike(f"%{search}%"),
            ))
        if country:
            filters.append(LEIRecord.legal_address_country == country.upper())
        if registration_status:
            filters.append(LEIRecord.registration_status == registration_status.upper())
        if entity_status:
            filters.append(LEIRecord.entity_status == entity_status.upper())
        if entity_category:
            filters.append(LEIRecord.entity_category == entity_category.upper())

        count_query = select(func.count()).select_from(LEIRecord)
        query = select(LEIRecord)
        if filters:
            count_query = count_query.where(*filters)
            query = query.where(*filters)

        total_items = (await self.db.execute(count_query)).scalar() or 0
        total_pages = math.ceil(total_items / page_size) if total_items > 0 else 0

        column = SORTABLE_FIELDS[sort_by]
        ordering = [column.desc() if sort_order == "desc" else column.asc()]
        if sort_by != "lei":
            # Stable pages when the sort column has ties
            ordering.append(LEIRecord.lei)

        result = await self.db.execute(
            query.order_by(*ordering)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        items = [LEIRecordResponse.from_orm(row) for row in result.scalars().all()]

        return LEIRecordListResponse(
            items=items,
            pagination=PaginationMetadata(
                total_items=total_items,
                total_pages=total_pages,
                current_page=page,
                page_size=page_size,
                has_next=page < total_pages,
                has_previous=page > 1,
            ),
        )

    async def get_audit_history(self, lei: str, limit: int = 50) -> List[LEIRecordAuditResponse]:
        """
        Audit entries for ``lei``, newest first.

        Raises:
            RecordNotFoundError: No record and no history for the LEI
        """
        lei = lei.strip().upper()
        result = await self.db.execute(
            select(LEIRecordAudit)
            .where(LEIRecordAudit.lei == lei)
            .order_by(LEIRecordAudit.created_at.desc(), LEIRecordAudit.id)
            .limit(limit)
        )
        entries = list(result.scalars().all())
        if not entries:
            # Distinguish "no history yet" from "unknown LEI"
            await self.get_record(lei)
        return [LEIRecordAuditResponse.from_orm(entry) for entry in entries]

"""
Durable state for the ingestion pipeline: snapshot files and job status.

SnapshotStore and JobStatusStore are the only writers of the
``source_files`` and ``file_processing_status`` tables.
"""

from datetime import datetime, timedelta
from typing import Iterable, List, Optional
import logging
import uuid

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from models.base import SnapshotKind, ProcessingStatus, JobState, FailureCategory
from models.job_status import JobStatus
from models.lei_record import LEIRecord
from models.snapshot import SnapshotFile

logger = logging.getLogger(__name__)

# States a job kind may be claimed from
SCHEDULED_CLAIMABLE = (JobState.IDLE, JobState.COMPLETED)
OPERATOR_CLAIMABLE = (JobState.IDLE, JobState.COMPLETED, JobState.FAILED)


class SnapshotStore:
    """Create, read and update SnapshotFile rows"""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def create(
        self,
        kind: SnapshotKind,
        file_name: str,
        source_uri: str,
        file_size: int,
        file_hash: Optional[str],
        max_retries: int,
        status: ProcessingStatus = ProcessingStatus.PENDING,
        failure_category: Optional[FailureCategory] = None,
        processing_error: Optional[str] = None,
    ) -> SnapshotFile:
        """Register a downloaded file. total_records starts unknown (0)."""
        snapshot = SnapshotFile(
            id=uuid.uuid4(),
            kind=kind,
            file_name=file_name,
            source_uri=source_uri,
            file_size=file_size,
            file_hash=file_hash,
            downloaded_at=datetime.utcnow(),
            processing_status=status,
            total_records=0,
            processed_records=0,
            failed_records=0,
            checkpoint_key="",
            retry_count=0,
            max_retries=max_retries,
            failure_category=failure_category,
            processing_error=processing_error,
        )
        self.db.add(snapshot)
        await self.db.commit()
        return snapshot

    async def get(self, snapshot_id: uuid.UUID) -> Optional[SnapshotFile]:
        """Fresh read, never served from a stale identity map entry"""
        return await self.db.get(SnapshotFile, snapshot_id, populate_existing=True)

    async def get_latest(self, kind: SnapshotKind) -> Optional[SnapshotFile]:
        result = await self.db.execute(
            select(SnapshotFile)
            .where(SnapshotFile.kind == kind)
            .order_by(SnapshotFile.downloaded_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_completed_by_hash(
        self, kind: SnapshotKind, file_hash: str
    ) -> Optional[SnapshotFile]:
        result = await self.db.execute(
            select(SnapshotFile)
            .where(
                SnapshotFile.kind == kind,
                SnapshotFile.file_hash == file_hash,
                SnapshotFile.processing_status == ProcessingStatus.COMPLETED,
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_interrupted(self, kind: SnapshotKind) -> List[SnapshotFile]:
        """PENDING / IN_PROGRESS snapshots, oldest first"""
        result = await self.db.execute(
            select(SnapshotFile)
            .where(
                SnapshotFile.kind == kind,
                SnapshotFile.processing_status.in_(
                    [ProcessingStatus.PENDING, ProcessingStatus.IN_PROGRESS]
                ),
            )
            .order_by(SnapshotFile.downloaded_at.asc())
        )
        return list(result.scalars().all())

    async def list_with_payload(self, kind: SnapshotKind) -> List[SnapshotFile]:
        """Snapshots whose raw file has not been removed yet, newest first"""
        result = await self.db.execute(
            select(SnapshotFile)
            .where(SnapshotFile.kind == kind, SnapshotFile.payload_deleted_at.is_(None))
            .order_by(SnapshotFile.downloaded_at.desc())
        )
        return list(result.scalars().all())

    async def mark_in_progress(self, snapshot: SnapshotFile) -> None:
        snapshot.processing_status = ProcessingStatus.IN_PROGRESS
        snapshot.processing_started_at = datetime.utcnow()
        snapshot.processing_error = None
        await self.db.commit()

    async def set_total_records(self, snapshot: SnapshotFile, total: int) -> None:
        snapshot.total_records = total
        await self.db.commit()

    def stage_progress(
        self, snapshot: SnapshotFile, processed: int, failed: int, checkpoint_key: str
    ) -> None:
        """Stage counters and checkpoint; committed together with the batch"""
        snapshot.processed_records = processed
        snapshot.failed_records = failed
        snapshot.checkpoint_key = checkpoint_key

    def stage_completed(self, snapshot: SnapshotFile) -> None:
        """Stage COMPLETED so the last batch and completion commit together"""
        snapshot.processing_status = ProcessingStatus.COMPLETED
        snapshot.processing_completed_at = datetime.utcnow()
        snapshot.failure_category = None
        snapshot.processing_error = None

    async def mark_completed(self, snapshot: SnapshotFile) -> None:
        snapshot.processing_status = ProcessingStatus.COMPLETED
        snapshot.processing_completed_at = datetime.utcnow()
        snapshot.failure_category = None
        snapshot.processing_error = None
        await self.db.commit()

    async def mark_failed(
        self, snapshot_id: uuid.UUID, category: FailureCategory, message: str
    ) -> None:
        """
        Mark FAILED without touching counters or checkpoint.

        Safe to call right after a rollback: the row is re-read, so values
        staged by the failed batch are discarded.
        """
        snapshot = await self.get(snapshot_id)
        if snapshot is None:
            logger.error(f"Cannot mark missing snapshot {snapshot_id} as failed")
            return
        snapshot.processing_status = ProcessingStatus.FAILED
        snapshot.failure_category = category
        snapshot.processing_error = message
        await self.db.commit()

    async def claim_for_retry(self, snapshot: SnapshotFile) -> None:
        """Re-claim a FAILED snapshot: one more attempt, checkpoint kept"""
        snapshot.retry_count += 1
        snapshot.processing_status = ProcessingStatus.PENDING
        snapshot.processing_error = None
        await self.db.commit()

    async def mark_payload_deleted(self, snapshot: SnapshotFile) -> None:
        snapshot.payload_deleted_at = datetime.utcnow()
        await self.db.commit()


class JobStatusStore:
    """
    Per job kind run state.

    ``try_claim`` is a compare-and-swap against the row: the UPDATE only
    matches while the status is still one of the claimable states and no
    other job kind is RUNNING, so the scheduled path and the HTTP trigger
    path exclude each other across processes.
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def ensure(self, kind: SnapshotKind) -> JobStatus:
        """Return the singleton row for ``kind``, creating it IDLE if missing"""
        job = await self.get(kind)
        if job is None:
            job = JobStatus(job_kind=kind, status=JobState.IDLE)
            self.db.add(job)
            await self.db.commit()
        return job

    async def get(self, kind: SnapshotKind) -> Optional[JobStatus]:
        result = await self.db.execute(
            select(JobStatus)
            .where(JobStatus.job_kind == kind)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_all(self) -> List[JobStatus]:
        result = await self.db.execute(
            select(JobStatus)
            .order_by(JobStatus.job_kind)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def try_claim(
        self,
        kind: SnapshotKind,
        claimable_from: Iterable[JobState] = SCHEDULED_CLAIMABLE,
        snapshot_id: Optional[uuid.UUID] = None,
    ) -> bool:
        """Atomically move ``kind`` to RUNNING. Returns False if not claimable."""
        await self.ensure(kind)

        # Row locks on every kind first: two claims of different kinds must
        # not both pass the NOT EXISTS check under READ COMMITTED
        await self.db.execute(
            select(JobStatus.id)
            .order_by(JobStatus.job_kind)
            .with_for_update()
        )

        other = aliased(JobStatus)
        other_running = (
            select(other.id)
            .where(other.job_kind != kind, other.status == JobState.RUNNING)
            .exists()
        )
        now = datetime.utcnow()
        result = await self.db.execute(
            update(JobStatus)
            .where(
                JobStatus.job_kind == kind,
                JobStatus.status.in_(list(claimable_from)),
                ~other_running,
            )
            .values(
                status=JobState.RUNNING,
                current_snapshot_id=snapshot_id,
                error_message=None,
                last_run_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def _set(self, kind: SnapshotKind, **values) -> None:
        values["updated_at"] = datetime.utcnow()
        await self.db.execute(
            update(JobStatus)
            .where(JobStatus.job_kind == kind)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def set_snapshot(self, kind: SnapshotKind, snapshot_id: uuid.UUID) -> None:
        await self._set(kind, current_snapshot_id=snapshot_id)

    async def complete(self, kind: SnapshotKind) -> None:
        await self._set(
            kind,
            status=JobState.COMPLETED,
            error_message=None,
            last_success_at=datetime.utcnow(),
        )

    async def fail(self, kind: SnapshotKind, message: str) -> None:
        await self._set(kind, status=JobState.FAILED, error_message=message)

    async def release(self, kind: SnapshotKind, message: Optional[str] = None) -> None:
        """Back to IDLE without success or failure (cancellation)"""
        await self._set(kind, status=JobState.IDLE, error_message=message)

    async def stage_heartbeat(self, kind: SnapshotKind) -> None:
        """Bump updated_at on a RUNNING kind; committed by the caller's transaction"""
        await self.db.execute(
            update(JobStatus)
            .where(JobStatus.job_kind == kind, JobStatus.status == JobState.RUNNING)
            .values(updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )

    async def reset_stuck(self, lease: timedelta) -> List[SnapshotKind]:
        """
        Reset kinds left RUNNING by a process that died mid-run.

        A RUNNING row is only considered stuck once its heartbeat
        (``updated_at``) is older than ``lease``; a run that is still
        flushing in another process keeps its claim.
        """
        cutoff = datetime.utcnow() - lease
        stuck = []
        for job in await self.get_all():
            if job.status != JobState.RUNNING:
                continue
            if job.updated_at >= cutoff:
                logger.info(
                    f"{job.job_kind.value} is RUNNING with a live heartbeat "
                    f"({job.updated_at}); leaving it alone"
                )
                continue

            result = await self.db.execute(
                update(JobStatus)
                .where(
                    JobStatus.job_kind == job.job_kind,
                    JobStatus.status == JobState.RUNNING,
                    JobStatus.updated_at < cutoff,
                )
                .values(
                    status=JobState.IDLE,
                    error_message="Previous run was interrupted",
                    updated_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            if result.rowcount == 1:
                logger.warning(
                    f"Reset stuck RUNNING status for {job.job_kind.value} "
                    f"(last run {job.last_run_at}, last heartbeat {job.updated_at})"
                )
                stuck.append(job.job_kind)
        return stuck


async def count_lei_records(db_session: AsyncSession) -> int:
    result = await db_session.execute(select(func.count()).select_from(LEIRecord))
    return result.scalar() or 0

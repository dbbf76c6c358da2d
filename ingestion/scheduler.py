"""
Scheduler - timed and manual FULL/DELTA runs, resume, retention and
startup recovery.

Runs are claimed through JobStatusStore.try_claim before any work starts,
so the weekly/interval timers, the HTTP trigger path and other server
instances all respect the same RUNNING token. Claimed work runs as a
background task; trigger and resume calls return as soon as the claim is
made.
"""

from typing import Any, Callable, Dict, List, Optional, Set
import asyncio
import logging
import uuid

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings as default_settings
from core.database import async_session_maker
from core.exceptions import (
    IngestionError,
    AcquisitionError,
    DuplicateSnapshotError,
    JobAlreadyRunningError,
    SnapshotNotFoundError,
    SnapshotStateError,
    RetryExhaustedError,
)
from ingestion.extractors.gleif_downloader import GLEIFDownloader
from ingestion.processor import SnapshotProcessor, ProcessingResult
from ingestion.retention import RetentionCleaner
from ingestion.schedule import ScheduleConfig
from ingestion.store import (
    SnapshotStore,
    JobStatusStore,
    SCHEDULED_CLAIMABLE,
    OPERATOR_CLAIMABLE,
    count_lei_records,
)
from models.base import SnapshotKind, ProcessingStatus, JobState, FailureCategory

logger = logging.getLogger(__name__)


class IngestionScheduler:
    """
    Drive acquisition -> processing for FULL and DELTA, plus daily cleanup.

    Jobs:
    - full_sync: weekly CronTrigger (LEI_FULL_SYNC_DAY + LEI_FULL_SYNC_TIME)
    - delta_sync: IntervalTrigger (LEI_DELTA_SYNC_INTERVAL)
    - retention_cleanup: daily CronTrigger (LEI_CLEANUP_TIME)
    - startup_recovery: once, immediately after start()

    Scheduled firings skip a job kind that is RUNNING or FAILED; a FAILED
    kind waits for an operator (trigger or resume).
    """

    def __init__(
        self,
        session_factory=None,
        config=None,
        data_dir: Optional[str] = None,
        batch_size: Optional[int] = None,
        downloader_factory: Optional[Callable[[AsyncSession], GLEIFDownloader]] = None,
    ):
        self.settings = config or default_settings
        self.session_factory = session_factory or async_session_maker
        self.data_dir = data_dir or self.settings.LEI_DATA_DIR
        self.batch_size = batch_size or self.settings.LEI_BATCH_SIZE
        self.downloader_factory = downloader_factory or (
            lambda session: GLEIFDownloader(session, data_dir=self.data_dir)
        )
        self.scheduler = AsyncIOScheduler()
        self.cancel_event = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, recover: bool = True) -> None:
        """
        Register the timers and start them.

        Raises:
            ConfigurationError: Unparsable schedule configuration
        """
        schedule = ScheduleConfig.from_settings(self.settings)
        self.cancel_event.clear()

        full_hour, full_minute = schedule.full_time
        cleanup_hour, cleanup_minute = schedule.cleanup_time

        self.scheduler.add_job(
            self.scheduled_sync,
            trigger=CronTrigger(day_of_week=schedule.full_day, hour=full_hour, minute=full_minute),
            args=[SnapshotKind.FULL],
            id="full_sync",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self.scheduled_sync,
            trigger=IntervalTrigger(seconds=int(schedule.delta_interval.total_seconds())),
            args=[SnapshotKind.DELTA],
            id="delta_sync",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self.run_cleanup,
            trigger=CronTrigger(hour=cleanup_hour, minute=cleanup_minute),
            id="retention_cleanup",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if recover:
            self.scheduler.add_job(self._spawn_recovery, id="startup_recovery", replace_existing=True)

        self.scheduler.start()
        logger.info(
            f"Ingestion scheduler started: FULL every {schedule.full_day} at "
            f"{full_hour:02d}:{full_minute:02d}, DELTA every {schedule.delta_interval}, "
            f"cleanup daily at {cleanup_hour:02d}:{cleanup_minute:02d}"
        )

    def stop(self) -> None:
        """Stop the timers and ask in-flight runs to stop at the next batch boundary"""
        self.cancel_event.set()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Ingestion scheduler stopped")

    async def wait_for_runs(self, timeout: Optional[float] = None) -> None:
        """Wait for background runs; cancel whatever is left after ``timeout``"""
        tasks = list(self._tasks)
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            logger.warning(f"Cancelling background run {task.get_name()} after {timeout}s")
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        if isinstance(error, IngestionError):
            logger.error(
                f"Background run {task.get_name()} failed: {error.message}",
                extra={"error_context": error.to_dict()}
            )
        else:
            logger.error(f"Background run {task.get_name()} failed: {error!r}")

    # ------------------------------------------------------------------
    # Sync runs
    # ------------------------------------------------------------------

    async def scheduled_sync(self, kind: SnapshotKind) -> None:
        """Timer callback: claim (IDLE/COMPLETED only) and start a run"""
        async with self.session_factory() as session:
            claimed = await JobStatusStore(session).try_claim(kind, SCHEDULED_CLAIMABLE)
        if not claimed:
            logger.info(f"Scheduled {kind.value} sync skipped: job is running, failed, or blocked")
            return
        self._spawn(self.run_sync(kind), name=f"{kind.value.lower()}-sync")

    async def trigger_full(self) -> None:
        await self.trigger(SnapshotKind.FULL)

    async def trigger_delta(self) -> None:
        await self.trigger(SnapshotKind.DELTA)

    async def trigger(self, kind: SnapshotKind) -> None:
        """
        Start an immediate run of ``kind`` in the background.

        Raises:
            JobAlreadyRunningError: ``kind`` (or the other kind) is RUNNING
        """
        async with self.session_factory() as session:
            jobs = JobStatusStore(session)
            if not await jobs.try_claim(kind, OPERATOR_CLAIMABLE):
                raise await self._conflict(jobs, kind)

        logger.info(f"Manual {kind.value} sync triggered")
        self._spawn(self.run_sync(kind), name=f"{kind.value.lower()}-sync")

    async def run_sync(self, kind: SnapshotKind) -> Optional[ProcessingResult]:
        """
        Acquire a new snapshot and process it. The caller holds the claim.

        Returns None when the download was a duplicate of a processed file.
        """
        async with self.session_factory() as session:
            jobs = JobStatusStore(session)

            if self.cancel_event.is_set():
                await jobs.release(kind, "interrupted")
                return None

            try:
                snapshot = await self.downloader_factory(session).download(kind)

            except DuplicateSnapshotError as e:
                await jobs.complete(kind)
                logger.info(
                    f"{kind.value} sync finished without changes: file already processed "
                    f"as snapshot {e.existing_snapshot_id}"
                )
                return None

            except IngestionError as e:
                snapshot_id = e.context.get("snapshot_id")
                if snapshot_id:
                    await jobs.set_snapshot(kind, uuid.UUID(snapshot_id))
                await jobs.fail(kind, e.message)
                raise

            except Exception as e:
                await jobs.fail(kind, f"Acquisition failed: {e}")
                raise AcquisitionError(
                    "Unexpected error during acquisition",
                    context={"kind": kind.value},
                    original_exception=e
                )

            snapshot_id = snapshot.id
            await jobs.set_snapshot(kind, snapshot_id)

        return await self._processor().process(snapshot_id)

    def _processor(self) -> SnapshotProcessor:
        return SnapshotProcessor(
            session_factory=self.session_factory,
            data_dir=self.data_dir,
            batch_size=self.batch_size,
            cancel_event=self.cancel_event,
        )

    async def _conflict(self, jobs: JobStatusStore, kind: SnapshotKind) -> JobAlreadyRunningError:
        running = [job.job_kind.value for job in await jobs.get_all() if job.status == JobState.RUNNING]
        if kind.value in running:
            message = f"{kind.value} sync is already running"
        else:
            message = f"Cannot start {kind.value} sync while {', '.join(running) or 'another'} sync is running"
        return JobAlreadyRunningError(message, context={"job_kind": kind.value, "running": running})

    # ------------------------------------------------------------------
    # Resume
    # ------------------------------------------------------------------

    async def resume(self, snapshot_id: uuid.UUID) -> uuid.UUID:
        """
        Re-claim a snapshot and continue it from its checkpoint in the background.

        FAILED snapshots consume one retry; interrupted (PENDING/IN_PROGRESS)
        ones do not.

        Raises:
            SnapshotNotFoundError: Unknown id
            SnapshotStateError: Already COMPLETED, or payload deleted
            RetryExhaustedError: No retries left, or not retryable
            JobAlreadyRunningError: Job kind (or the other kind) is RUNNING
        """
        async with self.session_factory() as session:
            snapshots = SnapshotStore(session)
            jobs = JobStatusStore(session)

            snapshot = await snapshots.get(snapshot_id)
            if snapshot is None:
                raise SnapshotNotFoundError(
                    f"Snapshot {snapshot_id} not found",
                    context={"snapshot_id": str(snapshot_id)}
                )

            context = {
                "snapshot_id": str(snapshot_id),
                "status": snapshot.processing_status.value,
                "retry_count": snapshot.retry_count,
                "max_retries": snapshot.max_retries,
            }

            if snapshot.processing_status == ProcessingStatus.COMPLETED:
                raise SnapshotStateError(f"Snapshot {snapshot_id} is already completed", context=context)

            if snapshot.processing_status == ProcessingStatus.FAILED:
                category = snapshot.failure_category or FailureCategory.UNKNOWN
                if not category.retryable:
                    context["failure_category"] = category.value
                    raise RetryExhaustedError(
                        f"Snapshot {snapshot_id} failed with {category.value} and cannot be retried; "
                        f"a fresh download is required",
                        context=context
                    )
                if snapshot.retry_count >= snapshot.max_retries:
                    raise RetryExhaustedError(
                        f"Snapshot {snapshot_id} has used {snapshot.retry_count} of "
                        f"{snapshot.max_retries} retries",
                        context=context
                    )

            if snapshot.payload_deleted_at is not None:
                raise SnapshotStateError(
                    f"Payload of snapshot {snapshot_id} was removed by retention cleanup",
                    context=context
                )

            kind = snapshot.kind
            if not await jobs.try_claim(kind, OPERATOR_CLAIMABLE, snapshot_id=snapshot_id):
                raise await self._conflict(jobs, kind)

            if snapshot.processing_status == ProcessingStatus.FAILED:
                await snapshots.claim_for_retry(snapshot)
                logger.info(
                    f"Retrying {kind.value} snapshot {snapshot_id} "
                    f"(attempt {snapshot.retry_count}/{snapshot.max_retries}) "
                    f"from checkpoint {snapshot.checkpoint_key or '<start>'}"
                )
            else:
                logger.info(f"Resuming interrupted {kind.value} snapshot {snapshot_id}")

        self._spawn(self.process_claimed(kind, snapshot_id), name=f"resume-{snapshot_id}")
        return snapshot_id

    async def process_claimed(self, kind: SnapshotKind, snapshot_id: uuid.UUID) -> ProcessingResult:
        """Process a snapshot whose job kind is already claimed"""
        try:
            return await self._processor().process(snapshot_id)
        except SnapshotNotFoundError as e:
            async with self.session_factory() as session:
                await JobStatusStore(session).fail(kind, e.message)
            raise

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def run_cleanup(self) -> Dict[str, List[str]]:
        """Delete payloads beyond LEI_KEEP_FULL_FILES / LEI_KEEP_DELTA_FILES"""
        async with self.session_factory() as session:
            cleaner = RetentionCleaner(session, data_dir=self.data_dir)
            return await cleaner.cleanup(
                keep_full=self.settings.LEI_KEEP_FULL_FILES,
                keep_delta=self.settings.LEI_KEEP_DELTA_FILES,
            )

    # ------------------------------------------------------------------
    # Startup recovery
    # ------------------------------------------------------------------

    async def _spawn_recovery(self) -> None:
        self._spawn(self.recover(), name="startup-recovery")

    async def recover(self) -> Dict[str, Any]:
        """
        Bring durable state back in line after a restart.

        1. Reset job kinds left RUNNING by a dead process (heartbeat older
           than LEI_RUN_LEASE)
        2. Resume interrupted snapshots per kind, oldest first
        3. Trigger an initial FULL sync if the record store is empty
        """
        summary: Dict[str, Any] = {"reset": [], "resumed": [], "initial_full_sync": False}
        lease = ScheduleConfig.from_settings(self.settings).run_lease

        async with self.session_factory() as session:
            jobs = JobStatusStore(session)
            snapshots = SnapshotStore(session)

            for kind in SnapshotKind:
                await jobs.ensure(kind)
            summary["reset"] = [kind.value for kind in await jobs.reset_stuck(lease)]

            interrupted = []
            for kind in SnapshotKind:
                interrupted.extend((kind, s.id) for s in await snapshots.find_interrupted(kind))

        for kind, snapshot_id in interrupted:
            if self.cancel_event.is_set():
                return summary

            async with self.session_factory() as session:
                claimed = await JobStatusStore(session).try_claim(
                    kind, OPERATOR_CLAIMABLE, snapshot_id=snapshot_id
                )
            if not claimed:
                logger.warning(f"Could not claim {kind.value} to resume snapshot {snapshot_id}")
                continue

            logger.info(f"Recovering interrupted {kind.value} snapshot {snapshot_id}")
            try:
                result = await self.process_claimed(kind, snapshot_id)
            except IngestionError as e:
                logger.error(
                    f"Recovery of snapshot {snapshot_id} failed: {e.message}",
                    extra={"error_context": e.to_dict()}
                )
                continue
            summary["resumed"].append(str(snapshot_id))
            if result.status == "cancelled":
                return summary

        async with self.session_factory() as session:
            empty = await count_lei_records(session) == 0

        if empty and self.settings.LEI_INITIAL_FULL_SYNC and not self.cancel_event.is_set():
            async with self.session_factory() as session:
                claimed = await JobStatusStore(session).try_claim(SnapshotKind.FULL, SCHEDULED_CLAIMABLE)
            if claimed:
                logger.info("Record store is empty; running initial FULL sync")
                summary["initial_full_sync"] = True
                try:
                    await self.run_sync(SnapshotKind.FULL)
                except IngestionError as e:
                    logger.error(
                        f"Initial FULL sync failed: {e.message}",
                        extra={"error_context": e.to_dict()}
                    )

        logger.info(
            f"Startup recovery done: reset={summary['reset']}, resumed={len(summary['resumed'])}, "
            f"initial_full_sync={summary['initial_full_sync']}"
        )
        return summary

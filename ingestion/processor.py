"""
Streaming Processor - resumable, checkpointed processing of one snapshot.

This module provides:
- Lazy record streaming (the file is never materialised in memory)
- Resume from checkpoint_key (a pure seek; skipped records are not counted)
- Per-record validation with local recovery (counted, skipped)
- Batched upserts committed atomically together with the progress update
- Typed failure classification (no message inspection)
- Cooperative cancellation at batch boundaries only
"""

from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple
import asyncio
import logging
import uuid

from sqlalchemy.exc import IntegrityError, DataError

from core.config import settings
from core.database import async_session_maker
from core.exceptions import (
    IngestionError,
    ProcessingError,
    RecordValidationError,
    CheckpointNotFoundError,
    SnapshotNotFoundError,
    SchemaError,
    UpsertError,
)
from ingestion.extractors.snapshot_reader import SnapshotReader, RawRecord
from ingestion.loaders.lei_loader import LEIRecordLoader
from ingestion.store import SnapshotStore, JobStatusStore
from ingestion.transformers.lei_normalizer import LEINormalizer
from models.base import ProcessingStatus
from schemas.lei import LEIRecordCreate

logger = logging.getLogger(__name__)


@dataclass
class ProcessingResult:
    """Summary of one processor run"""
    snapshot_id: uuid.UUID
    status: str  # "completed" or "cancelled"
    total_records: int
    processed_records: int
    failed_records: int
    checkpoint_key: str
    flushes: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["snapshot_id"] = str(self.snapshot_id)
        return result


def _seek(records: Iterator[RawRecord], key: str) -> bool:
    """Consume records up to and including the checkpoint record. False if the stream ends first."""
    for record in records:
        if record.key == key:
            return True
    return False


def _read_window(records: Iterator[RawRecord], size: int) -> List[RawRecord]:
    window = []
    for record in records:
        window.append(record)
        if len(window) >= size:
            break
    return window


class SnapshotProcessor:
    """
    Process a registered snapshot from its checkpoint to the end of file.

    The caller must already hold the RUNNING claim for the snapshot's job
    kind. On return the snapshot is COMPLETED (job COMPLETED) or, when
    cancelled, still IN_PROGRESS with its last good checkpoint (job IDLE).
    On failure the snapshot and job are FAILED and the error is re-raised.

    Attributes:
        batch_size: Valid records per flush
        cancel_event: Checked between batches, never mid-transaction
    """

    def __init__(
        self,
        session_factory=None,
        data_dir: Optional[str] = None,
        batch_size: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self.session_factory = session_factory or async_session_maker
        self.data_dir = Path(data_dir or settings.LEI_DATA_DIR)
        self.batch_size = batch_size or settings.LEI_BATCH_SIZE
        self.cancel_event = cancel_event or asyncio.Event()
        self.normalizer = LEINormalizer()

    async def process(self, snapshot_id: uuid.UUID) -> ProcessingResult:
        """
        Run the snapshot to completion, cancellation or failure.

        Raises:
            SnapshotNotFoundError: Unknown snapshot id
            IngestionError: Any run-aborting failure (already persisted)
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
            kind = snapshot.kind

            try:
                return await self._run(session, snapshots, jobs, snapshot)

            except IngestionError as e:
                await self._fail(session, snapshots, jobs, snapshot_id, kind, e)
                raise

            except Exception as e:
                error = ProcessingError(
                    "Unexpected error during snapshot processing",
                    context={"snapshot_id": str(snapshot_id), "kind": kind.value},
                    original_exception=e
                )
                await self._fail(session, snapshots, jobs, snapshot_id, kind, error)
                raise error

    async def _run(self, session, snapshots: SnapshotStore, jobs: JobStatusStore, snapshot) -> ProcessingResult:
        snapshot_id = snapshot.id
        kind = snapshot.kind
        reader = SnapshotReader(self.data_dir / snapshot.file_name)
        loader = LEIRecordLoader(session)

        await snapshots.mark_in_progress(snapshot)
        await jobs.set_snapshot(kind, snapshot_id)

        # --------------------------------------------------
        # PHASE 1: ESTABLISH TOTAL (first pass only)
        # --------------------------------------------------
        if not snapshot.total_records:
            total = await asyncio.to_thread(reader.count_records)
            await jobs.stage_heartbeat(kind)
            await snapshots.set_total_records(snapshot, total)

        total = snapshot.total_records
        processed = snapshot.processed_records
        failed = snapshot.failed_records
        checkpoint = snapshot.checkpoint_key or ""

        result = ProcessingResult(
            snapshot_id=snapshot_id,
            status="completed",
            total_records=total,
            processed_records=processed,
            failed_records=failed,
            checkpoint_key=checkpoint,
        )

        records = reader.iter_records()
        try:
            # --------------------------------------------------
            # PHASE 2: SEEK PAST CHECKPOINT (pure seek, nothing counted)
            # --------------------------------------------------
            if checkpoint:
                logger.info(
                    f"Resuming {kind.value} snapshot {snapshot_id} after {checkpoint} "
                    f"({processed} processed, {failed} failed)"
                )
                found = await asyncio.to_thread(_seek, records, checkpoint)
                if not found:
                    raise CheckpointNotFoundError(
                        f"Checkpoint {checkpoint} not found in snapshot file",
                        context={
                            "snapshot_id": str(snapshot_id),
                            "checkpoint_key": checkpoint,
                            "file_name": snapshot.file_name,
                        }
                    )
            else:
                logger.info(f"Processing {kind.value} snapshot {snapshot_id} ({total} records)")

            # --------------------------------------------------
            # PHASE 3: STREAM, VALIDATE, FLUSH
            # --------------------------------------------------
            batch: List[LEIRecordCreate] = []
            exhausted = False

            while not exhausted:
                if self.cancel_event.is_set():
                    await jobs.release(kind, "interrupted")
                    logger.warning(
                        f"Processing of {kind.value} snapshot {snapshot_id} cancelled "
                        f"at checkpoint {checkpoint or '<start>'}"
                    )
                    result.status = "cancelled"
                    return result

                window_failed = 0
                while len(batch) < self.batch_size:
                    window = await asyncio.to_thread(
                        _read_window, records, self.batch_size - len(batch)
                    )
                    if not window:
                        exhausted = True
                        break
                    for raw in window:
                        record = self._validate(raw)
                        if record is None:
                            window_failed += 1
                        else:
                            batch.append(record)

                if not batch and not window_failed:
                    break

                processed, failed, checkpoint = await self._flush(
                    session, snapshots, jobs, loader, snapshot, batch,
                    processed, failed + window_failed, checkpoint, result, final=exhausted
                )
                batch = []

        finally:
            records.close()

        # --------------------------------------------------
        # PHASE 4: COMPLETE
        # --------------------------------------------------
        if snapshot.processing_status != ProcessingStatus.COMPLETED:
            await snapshots.mark_completed(snapshot)
        await jobs.complete(kind)

        logger.info(
            f"{kind.value} snapshot {snapshot_id} completed: {processed} processed, "
            f"{failed} failed, {result.flushes} flushes "
            f"({result.created} created, {result.updated} updated, {result.unchanged} unchanged)"
        )
        return result

    def _validate(self, raw: RawRecord) -> Optional[LEIRecordCreate]:
        """Validated record, or None if it has to be counted as failed"""
        if raw.error is not None:
            logger.warning(f"Skipping record at position {raw.position}: {raw.error}")
            return None
        try:
            return self.normalizer.normalize(raw.payload, position=raw.position)
        except RecordValidationError as e:
            logger.warning(
                f"Skipping invalid record {raw.key or '<no LEI>'} at position {raw.position}",
                extra={"error_context": e.to_dict()}
            )
            return None

    async def _flush(
        self,
        session,
        snapshots: SnapshotStore,
        jobs: JobStatusStore,
        loader: LEIRecordLoader,
        snapshot,
        batch: List[LEIRecordCreate],
        processed: int,
        failed: int,
        checkpoint: str,
        result: ProcessingResult,
        final: bool = False,
    ) -> Tuple[int, int, str]:
        """Apply a batch, its progress update and the job heartbeat in one transaction"""
        snapshot_id = snapshot.id
        new_processed = processed + len(batch)
        new_checkpoint = batch[-1].lei if batch else checkpoint

        try:
            counts = await loader.apply_batch(batch, source_file_id=snapshot_id)
            snapshots.stage_progress(snapshot, new_processed, failed, new_checkpoint)
            if final:
                snapshots.stage_completed(snapshot)
            await jobs.stage_heartbeat(snapshot.kind)
            await session.commit()

        except (IntegrityError, DataError) as e:
            raise SchemaError(
                "Batch rejected by a constraint or data-shape violation",
                context=self._batch_context(snapshot_id, batch, checkpoint),
                original_exception=e
            )

        except Exception as e:
            raise UpsertError(
                "Batch flush failed",
                context=self._batch_context(snapshot_id, batch, checkpoint),
                original_exception=e
            )

        result.flushes += 1
        result.created += counts.created
        result.updated += counts.updated
        result.unchanged += counts.unchanged
        result.processed_records = new_processed
        result.failed_records = failed
        result.checkpoint_key = new_checkpoint

        logger.info(
            f"Flush {result.flushes}: checkpoint={new_checkpoint}, "
            f"{new_processed}/{snapshot.total_records} processed, {failed} failed "
            f"({snapshot.percent_complete:.2f}% complete)"
        )
        return new_processed, failed, new_checkpoint

    @staticmethod
    def _batch_context(snapshot_id: uuid.UUID, batch: List[LEIRecordCreate], checkpoint: str) -> Dict[str, Any]:
        return {
            "snapshot_id": str(snapshot_id),
            "batch_size": len(batch),
            "first_lei": batch[0].lei if batch else None,
            "last_lei": batch[-1].lei if batch else None,
            "checkpoint_key": checkpoint,
        }

    async def _fail(self, session, snapshots: SnapshotStore, jobs: JobStatusStore, snapshot_id, kind, error: IngestionError):
        """Persist the failure; values staged by the failed batch are discarded"""
        await session.rollback()
        await snapshots.mark_failed(snapshot_id, error.category, error.message)
        await jobs.fail(kind, error.message)
        logger.error(
            f"{kind.value} snapshot {snapshot_id} failed ({error.category.value}): {error.message}",
            extra={"error_context": error.to_dict()}
        )

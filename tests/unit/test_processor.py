"""
Unit tests for the streaming snapshot processor
"""

import asyncio
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError, OperationalError

from core.exceptions import (
    CheckpointNotFoundError,
    FileCorruptionError,
    SnapshotNotFoundError,
    SchemaError,
    UpsertError,
)
from ingestion.processor import SnapshotProcessor, _seek
from ingestion.extractors.snapshot_reader import RawRecord
from ingestion.loaders.lei_loader import LEIRecordLoader
from ingestion.store import SnapshotStore, JobStatusStore
from models.base import SnapshotKind, ProcessingStatus, JobState, FailureCategory
from models.lei_record import LEIRecord


class ProcessDied(BaseException):
    """Escapes every ``except Exception`` like a killed worker"""


async def reload(session_factory, snapshot_id):
    async with session_factory() as session:
        return await SnapshotStore(session).get(snapshot_id)


async def record_count(session_factory):
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(LEIRecord))).scalar()


class TestSeek:

    def test_seek_stops_after_checkpoint(self):
        records = iter([RawRecord(i, f"K{i}", {}) for i in range(1, 6)])

        assert _seek(records, "K3")
        assert next(records).key == "K4"

    def test_seek_missing_key(self):
        records = iter([RawRecord(1, "K1", {})])
        assert not _seek(records, "K9")


class TestSnapshotProcessor:
    """Test checkpointed batch processing of one snapshot"""

    @pytest.mark.asyncio
    async def test_fresh_snapshot(self, session_factory, data_dir, register_snapshot, make_payload, make_lei):
        snapshot = await register_snapshot([make_payload(i) for i in range(1, 8)])
        processor = SnapshotProcessor(session_factory, data_dir=str(data_dir), batch_size=3)

        result = await processor.process(snapshot.id)

        assert result.status == "completed"
        assert result.flushes == 3
        assert (result.created, result.updated, result.unchanged) == (7, 0, 0)

        done = await reload(session_factory, snapshot.id)
        assert done.processing_status == ProcessingStatus.COMPLETED
        assert done.total_records == 7
        assert done.processed_records == 7
        assert done.failed_records == 0
        assert done.checkpoint_key == make_lei(7)
        assert done.percent_complete == 100.0
        assert done.processing_completed_at is not None

    @pytest.mark.asyncio
    async def test_invalid_records_are_counted_and_skipped(
        self, session_factory, data_dir, register_snapshot, make_payload, make_lei
    ):
        records = [
            make_payload(1),
            "{broken",
            make_payload(2, country="Narnia"),
            make_payload(3),
        ]
        snapshot = await register_snapshot(records)

        result = await SnapshotProcessor(session_factory, data_dir=str(data_dir), batch_size=10).process(snapshot.id)

        assert result.processed_records == 2
        assert result.failed_records == 2
        done = await reload(session_factory, snapshot.id)
        assert done.total_records == 4
        assert done.checkpoint_key == make_lei(3)
        assert await record_count(session_factory) == 2

    @pytest.mark.asyncio
    async def test_malformed_lei_fails_only_that_record(
        self, session_factory, data_dir, register_snapshot, make_payload, make_lei
    ):
        listed = make_payload(2)
        listed["LEI"] = [make_lei(2)]
        nested = make_payload(3)
        nested["LEI"] = {"$": {"value": make_lei(3)}}
        numeric = make_payload(4)
        numeric["LEI"] = 12345678901234567890
        snapshot = await register_snapshot([make_payload(1), listed, nested, numeric, make_payload(5)])

        result = await SnapshotProcessor(session_factory, data_dir=str(data_dir), batch_size=10).process(snapshot.id)

        assert result.status == "completed"
        done = await reload(session_factory, snapshot.id)
        assert done.processing_status == ProcessingStatus.COMPLETED
        assert (done.processed_records, done.failed_records, done.total_records) == (2, 3, 5)
        assert done.checkpoint_key == make_lei(5)
        assert await record_count(session_factory) == 2

    @pytest.mark.asyncio
    async def test_file_with_only_invalid_records(self, session_factory, data_dir, register_snapshot):
        snapshot = await register_snapshot(["{broken", "[]"])

        result = await SnapshotProcessor(session_factory, data_dir=str(data_dir), batch_size=5).process(snapshot.id)

        assert result.status == "completed"
        done = await reload(session_factory, snapshot.id)
        assert done.processing_status == ProcessingStatus.COMPLETED
        assert (done.processed_records, done.failed_records) == (0, 2)
        assert done.checkpoint_key == ""

    @pytest.mark.asyncio
    async def test_empty_file(self, session_factory, data_dir, register_snapshot):
        snapshot = await register_snapshot([])

        result = await SnapshotProcessor(session_factory, data_dir=str(data_dir)).process(snapshot.id)

        assert result.flushes == 0
        done = await reload(session_factory, snapshot.id)
        assert done.processing_status == ProcessingStatus.COMPLETED
        assert done.percent_complete == 0.0

    @pytest.mark.asyncio
    async def test_resume_from_checkpoint_does_not_recount(
        self, session_factory, db_session, data_dir, register_snapshot, make_payload, make_lei
    ):
        snapshot = await register_snapshot([make_payload(i) for i in range(1, 6)])
        snapshot.total_records = 5
        snapshot.processed_records = 3
        snapshot.failed_records = 1
        snapshot.checkpoint_key = make_lei(3)
        snapshot.processing_status = ProcessingStatus.IN_PROGRESS
        await db_session.commit()

        result = await SnapshotProcessor(session_factory, data_dir=str(data_dir), batch_size=10).process(snapshot.id)

        assert result.created == 2
        done = await reload(session_factory, snapshot.id)
        assert done.processed_records == 5
        assert done.failed_records == 1
        assert done.checkpoint_key == make_lei(5)
        assert await record_count(session_factory) == 2

    @pytest.mark.asyncio
    async def test_missing_checkpoint_fails_loudly(
        self, session_factory, db_session, data_dir, register_snapshot, make_payload, make_lei
    ):
        snapshot = await register_snapshot([make_payload(1), make_payload(2)])
        await JobStatusStore(db_session).try_claim(SnapshotKind.FULL)
        snapshot.total_records = 2
        snapshot.processed_records = 1
        snapshot.checkpoint_key = make_lei(99)
        await db_session.commit()

        with pytest.raises(CheckpointNotFoundError):
            await SnapshotProcessor(session_factory, data_dir=str(data_dir)).process(snapshot.id)

        failed = await reload(session_factory, snapshot.id)
        assert failed.processing_status == ProcessingStatus.FAILED
        assert failed.failure_category == FailureCategory.FILE_CORRUPTION
        assert failed.processed_records == 1
        assert failed.checkpoint_key == make_lei(99)
        assert await record_count(session_factory) == 0

        async with session_factory() as session:
            job = await JobStatusStore(session).get(SnapshotKind.FULL)
        assert job.status == JobState.FAILED

    @pytest.mark.asyncio
    async def test_missing_payload_is_file_corruption(self, session_factory, data_dir, register_snapshot, make_payload):
        snapshot = await register_snapshot([make_payload(1)])
        (data_dir / snapshot.file_name).unlink()

        with pytest.raises(FileCorruptionError):
            await SnapshotProcessor(session_factory, data_dir=str(data_dir)).process(snapshot.id)

        failed = await reload(session_factory, snapshot.id)
        assert failed.failure_category == FailureCategory.FILE_CORRUPTION

    @pytest.mark.asyncio
    async def test_unknown_snapshot(self, session_factory, data_dir):
        with pytest.raises(SnapshotNotFoundError):
            await SnapshotProcessor(session_factory, data_dir=str(data_dir)).process(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_constraint_violation_keeps_last_good_checkpoint(
        self, session_factory, data_dir, register_snapshot, make_payload, make_lei, fail_flush
    ):
        snapshot = await register_snapshot([make_payload(i) for i in range(1, 10)])
        fail_flush(IntegrityError("INSERT INTO lei_records", {}, Exception("constraint failed")), on_call=2)

        with pytest.raises(SchemaError) as exc_info:
            await SnapshotProcessor(session_factory, data_dir=str(data_dir), batch_size=4).process(snapshot.id)

        assert exc_info.value.context["first_lei"] == make_lei(5)
        failed = await reload(session_factory, snapshot.id)
        assert failed.processing_status == ProcessingStatus.FAILED
        assert failed.failure_category == FailureCategory.SCHEMA_ERROR
        assert failed.processed_records == 4
        assert failed.checkpoint_key == make_lei(4)
        assert failed.retry_count == 0
        assert await record_count(session_factory) == 4

    @pytest.mark.asyncio
    async def test_unclassified_flush_error(self, session_factory, data_dir, register_snapshot, make_payload, fail_flush):
        snapshot = await register_snapshot([make_payload(1)])
        fail_flush(OperationalError("UPDATE", {}, Exception("disk I/O error")), on_call=1)

        with pytest.raises(UpsertError):
            await SnapshotProcessor(session_factory, data_dir=str(data_dir)).process(snapshot.id)

        failed = await reload(session_factory, snapshot.id)
        assert failed.failure_category == FailureCategory.UNKNOWN
        assert failed.checkpoint_key == ""

    @pytest.mark.asyncio
    async def test_cancel_before_first_batch(
        self, session_factory, db_session, data_dir, register_snapshot, make_payload
    ):
        snapshot = await register_snapshot([make_payload(1), make_payload(2)])
        await JobStatusStore(db_session).try_claim(SnapshotKind.FULL)
        cancel = asyncio.Event()
        cancel.set()

        result = await SnapshotProcessor(
            session_factory, data_dir=str(data_dir), cancel_event=cancel
        ).process(snapshot.id)

        assert result.status == "cancelled"
        interrupted = await reload(session_factory, snapshot.id)
        assert interrupted.processing_status == ProcessingStatus.IN_PROGRESS
        assert interrupted.total_records == 2
        assert interrupted.processed_records == 0

        async with session_factory() as session:
            job = await JobStatusStore(session).get(SnapshotKind.FULL)
        assert job.status == JobState.IDLE
        assert job.error_message == "interrupted"

    @pytest.mark.asyncio
    async def test_each_flush_renews_job_heartbeat(
        self, session_factory, db_session, data_dir, register_snapshot, make_payload,
        expire_heartbeat, fail_flush, monkeypatch
    ):
        """A run that is still flushing never looks dead to startup recovery"""
        snapshot = await register_snapshot([make_payload(i) for i in range(1, 7)])
        await JobStatusStore(db_session).try_claim(SnapshotKind.FULL, snapshot_id=snapshot.id)
        batch_sizes = fail_flush(ProcessDied(), on_call=3)
        crashing_apply = LEIRecordLoader.apply_batch

        async def apply_batch(self, records, source_file_id=None):
            # Age the heartbeat inside the first two flushes only
            if len(batch_sizes) < 2:
                await expire_heartbeat(SnapshotKind.FULL)
            return await crashing_apply(self, records, source_file_id=source_file_id)

        monkeypatch.setattr(LEIRecordLoader, "apply_batch", apply_batch)

        with pytest.raises(ProcessDied):
            await SnapshotProcessor(session_factory, data_dir=str(data_dir), batch_size=2).process(snapshot.id)

        assert batch_sizes == [2, 2, 2]
        async with session_factory() as session:
            jobs = JobStatusStore(session)
            assert await jobs.reset_stuck(timedelta(minutes=30)) == []
            assert (await jobs.get(SnapshotKind.FULL)).status == JobState.RUNNING

"""
Unit tests for snapshot acquisition and reading
"""

import hashlib
import io
import json
import zipfile

import httpx
import pytest
import respx

from core.exceptions import NetworkError, FileCorruptionError, DuplicateSnapshotError
from ingestion.extractors.gleif_downloader import GLEIFDownloader
from ingestion.extractors.snapshot_reader import SnapshotReader, verify_archive, extract_key
from schemas.lei import read_lei
from ingestion.store import SnapshotStore
from models.base import SnapshotKind, ProcessingStatus, FailureCategory

FULL_URL = "https://goldencopy.example.test/full/latest"
DELTA_URL = "https://goldencopy.example.test/delta/latest"


def zip_bytes(lines):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr("lei-records.json", "\n".join(lines) + "\n")
    return buffer.getvalue()


def make_downloader(db_session, data_dir, retries=3):
    return GLEIFDownloader(
        db_session,
        data_dir=str(data_dir),
        full_url=FULL_URL,
        delta_url=DELTA_URL,
        max_retries=retries,
        retry_delay=0,
        timeout=5,
    )


class TestSnapshotReader:
    """Test lazy record streaming"""

    def test_iter_records_in_file_order(self, write_snapshot, make_payload, make_lei):
        path = write_snapshot("full.json.zip", [make_payload(i) for i in range(1, 4)])

        records = list(SnapshotReader(path).iter_records())

        assert [r.key for r in records] == [make_lei(1), make_lei(2), make_lei(3)]
        assert [r.position for r in records] == [1, 2, 3]
        assert all(r.error is None for r in records)

    def test_malformed_lines_are_yielded_with_error(self, write_snapshot, make_payload):
        path = write_snapshot("full.json.zip", [make_payload(1), "{not json", "[1, 2]", "", make_payload(2)])

        records = list(SnapshotReader(path).iter_records())

        assert len(records) == 4  # blank line skipped
        assert records[1].error.startswith("Invalid JSON")
        assert records[2].error == "Record is not a JSON object"
        assert records[3].position == 4

    def test_count_records(self, write_snapshot, make_payload):
        path = write_snapshot("full.json.zip", [make_payload(i) for i in range(1, 6)] + ["garbage"])
        assert SnapshotReader(path).count_records() == 6

    def test_plain_jsonl_file(self, data_dir, make_payload, make_lei):
        path = data_dir / "local.jsonl"
        path.write_text(json.dumps(make_payload(1)) + "\n")

        records = list(SnapshotReader(path).iter_records())

        assert records[0].key == make_lei(1)

    def test_missing_payload(self, data_dir):
        with pytest.raises(FileCorruptionError):
            list(SnapshotReader(data_dir / "gone.json.zip").iter_records())

    def test_extract_key_forms(self):
        assert extract_key({"LEI": {"$": " abc "}}) == "ABC"
        assert extract_key({"LEI": "XYZ"}) == "XYZ"
        assert extract_key({"Entity": {}}) is None
        assert extract_key({"LEI": "   "}) is None

    def test_extract_key_agrees_with_normalizer(self, make_lei):
        """Keys that cannot be stored are never used as a checkpoint either"""
        for value in (549300, ["X"], {"$": 1.5}):
            assert extract_key({"LEI": value}) is None
        assert extract_key({"LEI": {"$": make_lei(1).lower()}}) == read_lei(make_lei(1).lower()) == make_lei(1)


class TestVerifyArchive:
    """Test archive structure and CRC checks"""

    def test_valid_archive(self, write_snapshot, make_payload):
        path = write_snapshot("ok.json.zip", [make_payload(1)])
        assert verify_archive(path) == "lei-records.json"

    def test_not_a_zip(self, data_dir):
        path = data_dir / "bad.json.zip"
        path.write_bytes(b"this is not a zip archive")

        with pytest.raises(FileCorruptionError):
            verify_archive(path)

    def test_no_json_member(self, data_dir):
        path = data_dir / "empty.json.zip"
        with zipfile.ZipFile(path, "w") as archive:
            archive.writestr("readme.txt", "nothing here")

        with pytest.raises(FileCorruptionError) as exc_info:
            verify_archive(path)
        assert exc_info.value.category == FailureCategory.FILE_CORRUPTION

    def test_crc_mismatch(self, data_dir):
        path = data_dir / "crc.json.zip"
        with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_STORED) as archive:
            archive.writestr("lei-records.json", "A" * 64)
        # Flip a byte inside the stored member data
        raw = bytearray(path.read_bytes())
        offset = raw.index(b"A" * 64)
        raw[offset] = ord("B")
        path.write_bytes(bytes(raw))

        with pytest.raises(FileCorruptionError):
            verify_archive(path)


class TestGLEIFDownloader:
    """Test streaming download, retry and registration"""

    @pytest.mark.asyncio
    @respx.mock
    async def test_download_registers_pending_snapshot(self, db_session, data_dir, make_payload):
        content = zip_bytes([json.dumps(make_payload(1))])
        respx.get(FULL_URL).mock(return_value=httpx.Response(200, content=content))

        snapshot = await make_downloader(db_session, data_dir).download(SnapshotKind.FULL)

        assert snapshot.processing_status == ProcessingStatus.PENDING
        assert snapshot.kind == SnapshotKind.FULL
        assert snapshot.total_records == 0
        assert snapshot.checkpoint_key == ""
        assert snapshot.file_size == len(content)
        assert snapshot.file_hash == hashlib.sha256(content).hexdigest()
        assert snapshot.file_name.startswith("lei-FULL-")
        assert (data_dir / snapshot.file_name).exists()

    @pytest.mark.asyncio
    @respx.mock
    async def test_transient_failure_is_retried(self, db_session, data_dir, make_payload):
        content = zip_bytes([json.dumps(make_payload(1))])
        route = respx.get(DELTA_URL).mock(side_effect=[
            httpx.ConnectError("connection refused"),
            httpx.Response(503),
            httpx.Response(200, content=content),
        ])

        snapshot = await make_downloader(db_session, data_dir).download(SnapshotKind.DELTA)

        assert route.call_count == 3
        assert snapshot.kind == SnapshotKind.DELTA

    @pytest.mark.asyncio
    @respx.mock
    async def test_network_failure_creates_no_row(self, db_session, data_dir):
        respx.get(FULL_URL).mock(side_effect=httpx.ConnectError("connection refused"))

        with pytest.raises(NetworkError) as exc_info:
            await make_downloader(db_session, data_dir, retries=2).download(SnapshotKind.FULL)

        assert exc_info.value.category == FailureCategory.NETWORK_ERROR
        assert exc_info.value.context["retry_count"] == 2
        assert await SnapshotStore(db_session).get_latest(SnapshotKind.FULL) is None
        assert list(data_dir.iterdir()) == []

    @pytest.mark.asyncio
    @respx.mock
    async def test_client_error_is_not_retried(self, db_session, data_dir):
        route = respx.get(FULL_URL).mock(return_value=httpx.Response(404))

        with pytest.raises(NetworkError):
            await make_downloader(db_session, data_dir).download(SnapshotKind.FULL)

        assert route.call_count == 1

    @pytest.mark.asyncio
    @respx.mock
    async def test_corrupt_archive_registers_failed_snapshot(self, db_session, data_dir):
        respx.get(FULL_URL).mock(return_value=httpx.Response(200, content=b"truncated garbage"))

        with pytest.raises(FileCorruptionError) as exc_info:
            await make_downloader(db_session, data_dir).download(SnapshotKind.FULL)

        snapshot = await SnapshotStore(db_session).get_latest(SnapshotKind.FULL)
        assert str(snapshot.id) == exc_info.value.context["snapshot_id"]
        assert snapshot.processing_status == ProcessingStatus.FAILED
        assert snapshot.failure_category == FailureCategory.FILE_CORRUPTION
        assert snapshot.retry_count == 0

    @pytest.mark.asyncio
    @respx.mock
    async def test_duplicate_of_completed_snapshot(self, db_session, data_dir, make_payload):
        content = zip_bytes([json.dumps(make_payload(1))])
        respx.get(FULL_URL).mock(return_value=httpx.Response(200, content=content))
        store = SnapshotStore(db_session)

        first = await make_downloader(db_session, data_dir).download(SnapshotKind.FULL)
        await store.mark_completed(first)

        with pytest.raises(DuplicateSnapshotError) as exc_info:
            await make_downloader(db_session, data_dir).download(SnapshotKind.FULL)

        assert exc_info.value.existing_snapshot_id == first.id
        assert [p.name for p in data_dir.iterdir()] == [first.file_name]

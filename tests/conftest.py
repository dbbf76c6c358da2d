"""
Pytest configuration and fixtures
"""

import json
import uuid
import zipfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import AsyncGenerator, Callable, Iterable, Optional, Union

import pytest
import pytest_asyncio
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

from ingestion.store import SnapshotStore
from models.base import Base, SnapshotKind
from models.job_status import JobStatus
from models.snapshot import SnapshotFile


def lei_checksum(prefix: str) -> str:
    """Append ISO 17442 check digits to an 18 character prefix"""
    digits = "".join(str(int(ch, 36)) for ch in prefix + "00")
    return f"{prefix}{98 - int(digits) % 97:02d}"


def gleif_payload(
    lei: str,
    legal_name: str = "Test Entity",
    country: str = "US",
    city: str = "New York",
    registration_status: str = "ISSUED",
    last_update: str = "2024-01-15T10:00:00Z",
    entity_status: str = "ACTIVE",
    entity_category: str = "GENERAL",
) -> dict:
    """A GLEIF Level 1 record in golden copy JSON shape"""
    return {
        "LEI": {"$": lei},
        "Entity": {
            "LegalName": {"$": legal_name},
            "OtherEntityNames": [{"$": f"{legal_name} Holdings"}],
            "LegalAddress": {
                "FirstAddressLine": {"$": "1 Main Street"},
                "AdditionalAddressLine": [{"$": "Floor 2"}],
                "City": {"$": city},
                "Region": {"$": "US-NY"},
                "Country": {"$": country},
                "PostalCode": {"$": "10001"},
            },
            "HeadquartersAddress": {
                "FirstAddressLine": {"$": "1 Main Street"},
                "City": {"$": city},
                "Country": {"$": country},
                "PostalCode": {"$": "10001"},
            },
            "RegistrationAuthority": {
                "RegistrationAuthorityID": {"$": "RA000665"},
                "RegistrationAuthorityEntityID": {"$": "12345"},
            },
            "LegalJurisdiction": {"$": country},
            "EntityCategory": {"$": entity_category},
            "LegalForm": {"EntityLegalFormCode": {"$": "XTIQ"}},
            "EntityStatus": {"$": entity_status},
        },
        "Registration": {
            "InitialRegistrationDate": {"$": "2014-03-01T00:00:00Z"},
            "LastUpdateDate": {"$": last_update},
            "RegistrationStatus": {"$": registration_status},
            "NextRenewalDate": {"$": "2025-03-01T00:00:00Z"},
            "ManagingLOU": {"$": "5493001KJTIIGC8Y1R12"},
        },
    }


@pytest.fixture
def make_lei() -> Callable[[int], str]:
    """Valid, sortable LEIs: make_lei(1) < make_lei(2) < ..."""
    def _make(n: int) -> str:
        return lei_checksum(f"TESTLEI{n:011d}")
    return _make


@pytest.fixture
def make_payload(make_lei) -> Callable[..., dict]:
    def _make(n: int, **overrides) -> dict:
        overrides.setdefault("legal_name", f"Entity {n}")
        return gleif_payload(make_lei(n), **overrides)
    return _make


@pytest.fixture
def data_dir(tmp_path) -> Path:
    path = tmp_path / "lei"
    path.mkdir()
    return path


@pytest.fixture
def write_snapshot(data_dir) -> Callable[..., Path]:
    """
    Write a golden-copy style zip into data_dir.

    Records may be dicts (JSON encoded) or raw strings (written verbatim,
    e.g. to inject a malformed line).
    """
    def _write(file_name: str, records: Iterable[Union[dict, str]]) -> Path:
        lines = [r if isinstance(r, str) else json.dumps(r) for r in records]
        path = data_dir / file_name
        with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            archive.writestr("lei-records.json", "\n".join(lines) + "\n")
        return path
    return _write


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """File-backed SQLite database, one per test"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
        poolclass=NullPool,  # Disable connection pooling for tests
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def register_snapshot(db_session, write_snapshot):
    """Write a snapshot file and register it PENDING, as acquisition would"""
    async def _register(
        records: Iterable[Union[dict, str]],
        kind: SnapshotKind = SnapshotKind.FULL,
        file_name: Optional[str] = None,
        max_retries: int = 3,
    ) -> SnapshotFile:
        records = list(records)
        file_name = file_name or f"lei-{kind.value}-{uuid.uuid4().hex[:8]}.json.zip"
        path = write_snapshot(file_name, records)
        return await SnapshotStore(db_session).create(
            kind=kind,
            file_name=file_name,
            source_uri=f"https://example.test/{kind.value.lower()}",
            file_size=path.stat().st_size,
            file_hash=None,
            max_retries=max_retries,
        )
    return _register


@pytest.fixture
def expire_heartbeat(session_factory):
    """Age a job kind's heartbeat past the run lease, as if its process died"""
    async def _expire(kind: SnapshotKind, age: timedelta = timedelta(hours=1)) -> None:
        async with session_factory() as session:
            await session.execute(
                update(JobStatus)
                .where(JobStatus.job_kind == kind)
                .values(updated_at=datetime.utcnow() - age)
            )
            await session.commit()
    return _expire


class StaticDownloaderFactory:
    """
    Stands in for GLEIFDownloader: "downloads" by writing ``records`` into
    data_dir and registering the file PENDING. Raises ``error`` instead when set.
    """

    def __init__(self, write_snapshot, records=(), error=None):
        self.write_snapshot = write_snapshot
        self.records = list(records)
        self.error = error
        self.calls = []

    def __call__(self, session):
        factory = self

        class _Downloader:
            async def download(self, kind):
                factory.calls.append(kind)
                if factory.error is not None:
                    raise factory.error
                file_name = f"lei-{kind.value}-{uuid.uuid4().hex[:8]}.json.zip"
                path = factory.write_snapshot(file_name, factory.records)
                return await SnapshotStore(session).create(
                    kind=kind,
                    file_name=file_name,
                    source_uri=f"https://example.test/{kind.value.lower()}",
                    file_size=path.stat().st_size,
                    file_hash=None,
                    max_retries=3,
                )

        return _Downloader()


@pytest.fixture
def make_scheduler(session_factory, data_dir, write_snapshot):
    """IngestionScheduler bound to the test database and a static downloader"""
    from ingestion.scheduler import IngestionScheduler

    def _make(records=(), error=None, batch_size: int = 10, config=None) -> IngestionScheduler:
        return IngestionScheduler(
            session_factory=session_factory,
            config=config,
            data_dir=str(data_dir),
            batch_size=batch_size,
            downloader_factory=StaticDownloaderFactory(write_snapshot, records, error),
        )
    return _make


@pytest.fixture
def fail_flush(monkeypatch):
    """
    Make LEIRecordLoader.apply_batch raise ``error`` on the n-th call, or on
    the batch containing ``on_lei``. Returns the list of batch sizes seen.
    """
    from ingestion.loaders.lei_loader import LEIRecordLoader
    original = LEIRecordLoader.apply_batch

    def _install(error: BaseException, on_call: Optional[int] = None, on_lei: Optional[str] = None):
        calls = []

        async def apply_batch(self, records, source_file_id=None):
            calls.append(len(records))
            if len(calls) == on_call or any(r.lei == on_lei for r in records):
                raise error
            return await original(self, records, source_file_id=source_file_id)

        monkeypatch.setattr(LEIRecordLoader, "apply_batch", apply_batch)
        return calls
    return _install

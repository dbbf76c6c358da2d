"""
GLEIF snapshot acquisition with streaming download, retry logic and
archive verification.

This module provides:
- Streaming download to LEI_DATA_DIR (never buffered whole in memory)
- SHA-256 hashing while downloading
- Exponential backoff retry for transient transport failures
- Archive verification (zip structure, JSON member, CRC)
- Duplicate detection against already processed snapshots
- Registration of the SnapshotFile row the processor picks up
"""

from datetime import datetime
from pathlib import Path
from typing import Optional
import asyncio
import hashlib
import logging

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.exceptions import (
    NetworkError,
    FileCorruptionError,
    DuplicateSnapshotError,
)
from ingestion.extractors.snapshot_reader import verify_archive
from ingestion.store import SnapshotStore
from models.base import SnapshotKind, ProcessingStatus
from models.snapshot import SnapshotFile

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


class GLEIFDownloader:
    """
    Fetch a FULL or DELTA golden copy and register it.

    Failure handling:
    - transport failures and non-2xx responses raise NetworkError after
      ``max_retries`` attempts; no SnapshotFile row is created
    - an archive that does not decompress is registered FAILED with
      FILE_CORRUPTION and retry_count 0, then FileCorruptionError is raised
    - a file identical to an already COMPLETED snapshot of the same kind is
      deleted and DuplicateSnapshotError is raised

    Attributes:
        max_retries: Download attempts before giving up (default: settings)
        retry_delay: Initial retry delay in seconds, doubled per attempt
        timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        db_session: AsyncSession,
        data_dir: Optional[str] = None,
        full_url: Optional[str] = None,
        delta_url: Optional[str] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        timeout: Optional[float] = None,
        snapshot_max_retries: Optional[int] = None,
    ):
        self.db = db_session
        self.store = SnapshotStore(db_session)
        self.data_dir = Path(data_dir or settings.LEI_DATA_DIR)
        self.urls = {
            SnapshotKind.FULL: full_url or settings.LEI_FULL_FILE_URL,
            SnapshotKind.DELTA: delta_url or settings.LEI_DELTA_FILE_URL,
        }
        self.max_retries = max_retries if max_retries is not None else settings.LEI_DOWNLOAD_RETRIES
        self.retry_delay = retry_delay if retry_delay is not None else settings.LEI_DOWNLOAD_RETRY_DELAY
        self.timeout = timeout if timeout is not None else settings.LEI_DOWNLOAD_TIMEOUT
        self.snapshot_max_retries = (
            snapshot_max_retries if snapshot_max_retries is not None else settings.LEI_MAX_RETRIES
        )

    async def download(self, kind: SnapshotKind) -> SnapshotFile:
        """
        Download, verify and register a snapshot of ``kind``.

        Returns:
            The PENDING SnapshotFile row

        Raises:
            NetworkError: Transport failure after all retries
            FileCorruptionError: Archive cannot be decompressed
            DuplicateSnapshotError: Same content was already processed
        """
        url = self.urls[kind]
        self.data_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.utcnow().strftime("%Y%m%d-%H%M%S-%f")
        file_name = f"lei-{kind.value}-{timestamp}.json.zip"
        file_path = self.data_dir / file_name

        logger.info(f"Starting {kind.value} download from {url}")
        file_size, file_hash = await self._download_with_retry(url, file_path)
        logger.info(f"Downloaded {file_name} ({file_size} bytes, sha256={file_hash})")

        existing = await self.store.find_completed_by_hash(kind, file_hash)
        if existing is not None:
            file_path.unlink(missing_ok=True)
            raise DuplicateSnapshotError(
                "Duplicate file already processed",
                existing_snapshot_id=existing.id,
                context={"kind": kind.value, "file_hash": file_hash, "existing_snapshot_id": str(existing.id)}
            )

        try:
            member = await asyncio.to_thread(verify_archive, file_path)
        except FileCorruptionError as e:
            snapshot = await self.store.create(
                kind=kind,
                file_name=file_name,
                source_uri=url,
                file_size=file_size,
                file_hash=file_hash,
                max_retries=self.snapshot_max_retries,
                status=ProcessingStatus.FAILED,
                failure_category=e.category,
                processing_error=e.message,
            )
            e.context["snapshot_id"] = str(snapshot.id)
            logger.error(
                f"Registered corrupt {kind.value} snapshot {snapshot.id}: {e.message}",
                extra={"error_context": e.to_dict()}
            )
            raise

        snapshot = await self.store.create(
            kind=kind,
            file_name=file_name,
            source_uri=url,
            file_size=file_size,
            file_hash=file_hash,
            max_retries=self.snapshot_max_retries,
        )
        logger.info(f"Registered {kind.value} snapshot {snapshot.id} (member {member})")
        return snapshot

    async def _download_with_retry(self, url: str, file_path: Path):
        """Stream ``url`` to ``file_path``; returns (size, sha256 hex)"""
        attempts = max(self.max_retries, 1)

        for attempt in range(attempts):
            try:
                return await self._stream_to_file(url, file_path)

            except NetworkError as e:
                file_path.unlink(missing_ok=True)
                if attempt < attempts - 1 and e.context.get("retryable", True):
                    delay = self.retry_delay * (2 ** attempt)
                    logger.warning(
                        f"{e.message}. Retrying in {delay} seconds "
                        f"(attempt {attempt + 1}/{attempts})"
                    )
                    await asyncio.sleep(delay)
                    continue
                e.context["retry_count"] = attempt + 1
                raise

            except (httpx.TimeoutException, httpx.TransportError) as e:
                file_path.unlink(missing_ok=True)
                if attempt < attempts - 1:
                    delay = self.retry_delay * (2 ** attempt)
                    logger.warning(
                        f"Download error ({type(e).__name__}). Retrying in {delay} seconds "
                        f"(attempt {attempt + 1}/{attempts})"
                    )
                    await asyncio.sleep(delay)
                    continue
                raise NetworkError(
                    f"Download failed after {attempts} attempts",
                    context={"url": url, "retry_count": attempt + 1},
                    original_exception=e
                )

    async def _stream_to_file(self, url: str, file_path: Path):
        digest = hashlib.sha256()
        size = 0

        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
            async with client.stream("GET", url) as response:
                if response.status_code != 200:
                    raise NetworkError(
                        f"Download failed: HTTP {response.status_code}",
                        context={
                            "url": url,
                            "status_code": response.status_code,
                            # 4xx will not fix itself on the next attempt
                            "retryable": response.status_code >= 500 or response.status_code == 429,
                        }
                    )

                with open(file_path, "wb") as out:
                    async for chunk in response.aiter_bytes(CHUNK_SIZE):
                        out.write(chunk)
                        digest.update(chunk)
                        size += len(chunk)

        return size, digest.hexdigest()

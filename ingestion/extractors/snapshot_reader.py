"""
Lazy record reader for downloaded GLEIF snapshot files.

GLEIF golden copies are zip archives holding a single JSON Lines member
(one Level 1 record per line). The reader decompresses the member as a
stream and yields one record at a time, so a multi-gigabyte file never has
to be materialised in memory or extracted to disk.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple
import io
import json
import logging
import zipfile
import zlib

from core.exceptions import FileCorruptionError
from schemas.lei import read_lei

logger = logging.getLogger(__name__)

JSON_SUFFIXES = (".json", ".jsonl")


@dataclass
class RawRecord:
    """One decoded line of a snapshot"""
    position: int  # 1-based, counts non-blank lines only
    key: Optional[str]  # LEI, when it could be read
    payload: Optional[Dict[str, Any]]
    error: Optional[str] = None


def extract_key(payload: Dict[str, Any]) -> Optional[str]:
    """Read the LEI from a record, accepting both plain and {"$": ...} forms"""
    try:
        return read_lei(payload.get("LEI"))
    except ValueError:
        return None


def find_json_member(archive: zipfile.ZipFile) -> str:
    """Name of the first JSON / JSON Lines member in the archive"""
    for name in archive.namelist():
        if name.lower().endswith(JSON_SUFFIXES):
            return name
    raise FileCorruptionError(
        "No JSON file found in ZIP archive",
        context={"members": archive.namelist()[:10]}
    )


def verify_archive(file_path: Path) -> str:
    """
    Structural and CRC check of a downloaded archive.

    Blocking; reads the whole archive once. Returns the JSON member name.

    Raises:
        FileCorruptionError: If the archive cannot be decompressed
    """
    if not zipfile.is_zipfile(file_path):
        raise FileCorruptionError(
            "Downloaded file is not a ZIP archive",
            context={"file_path": str(file_path)}
        )
    try:
        with zipfile.ZipFile(file_path) as archive:
            member = find_json_member(archive)
            bad_member = archive.testzip()
    except (zipfile.BadZipFile, zlib.error, EOFError, OSError) as e:
        raise FileCorruptionError(
            "Failed to decompress archive",
            context={"file_path": str(file_path)},
            original_exception=e
        )
    if bad_member is not None:
        raise FileCorruptionError(
            "CRC check failed",
            context={"file_path": str(file_path), "member": bad_member}
        )
    return member


class SnapshotReader:
    """
    Stream records out of a snapshot file.

    Supports:
    - zip archives with a JSON Lines member (GLEIF golden copy format)
    - plain .json / .jsonl files (already extracted, used by local runs)
    """

    def __init__(self, file_path: Path):
        self.file_path = Path(file_path)

    def _open_lines(self) -> Iterator[str]:
        if not self.file_path.exists():
            raise FileCorruptionError(
                "Snapshot payload is missing on disk",
                context={"file_path": str(self.file_path)}
            )

        if self.file_path.suffix.lower() in JSON_SUFFIXES:
            with open(self.file_path, "r", encoding="utf-8") as handle:
                yield from handle
            return

        try:
            with zipfile.ZipFile(self.file_path) as archive:
                member = find_json_member(archive)
                with archive.open(member) as raw:
                    text = io.TextIOWrapper(raw, encoding="utf-8")
                    yield from text
        except (zipfile.BadZipFile, zlib.error, EOFError, UnicodeDecodeError) as e:
            raise FileCorruptionError(
                "Failed to read snapshot archive",
                context={"file_path": str(self.file_path)},
                original_exception=e
            )

    def iter_lines(self) -> Iterator[Tuple[int, str]]:
        """Yield (position, line) for every non-blank line"""
        position = 0
        for line in self._open_lines():
            line = line.strip()
            if not line:
                continue
            position += 1
            yield position, line

    def iter_records(self) -> Iterator[RawRecord]:
        """
        Yield decoded records in file order.

        Lines that are not valid JSON objects are yielded with ``error`` set
        rather than raised, so the caller decides how to count them.
        """
        for position, line in self.iter_lines():
            try:
                payload = json.loads(line)
            except json.JSONDecodeError as e:
                yield RawRecord(position=position, key=None, payload=None, error=f"Invalid JSON: {e}")
                continue

            if not isinstance(payload, dict):
                yield RawRecord(position=position, key=None, payload=None, error="Record is not a JSON object")
                continue

            yield RawRecord(position=position, key=extract_key(payload), payload=payload)

    def count_records(self) -> int:
        """Number of non-blank lines. One full pass over the file."""
        count = 0
        for _ in self.iter_lines():
            count += 1
        logger.info(f"Counted {count} records in {self.file_path.name}")
        return count

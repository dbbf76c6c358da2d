"""
Retention cleanup of downloaded snapshot payloads
"""

from pathlib import Path
from typing import Dict, List, Optional
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from ingestion.store import SnapshotStore
from models.base import SnapshotKind

logger = logging.getLogger(__name__)


class RetentionCleaner:
    """
    Delete raw snapshot files beyond the retention count, per kind.

    Ensures:
    - FULL and DELTA are counted independently
    - Older payloads are deleted first
    - SnapshotFile rows are never deleted, only stamped payload_deleted_at
    - A payload that may still be resumed is never deleted
    """

    def __init__(self, db_session: AsyncSession, data_dir: Optional[str] = None):
        self.store = SnapshotStore(db_session)
        self.data_dir = Path(data_dir or settings.LEI_DATA_DIR)

    async def cleanup(self, keep_full: int, keep_delta: int) -> Dict[str, List[str]]:
        """
        Run retention for both kinds.

        Returns:
            {"FULL": [deleted file names], "DELTA": [...]}
        """
        removed = {
            SnapshotKind.FULL.value: await self.cleanup_kind(SnapshotKind.FULL, keep_full),
            SnapshotKind.DELTA.value: await self.cleanup_kind(SnapshotKind.DELTA, keep_delta),
        }
        logger.info(
            f"Retention cleanup removed {len(removed['FULL'])} FULL and "
            f"{len(removed['DELTA'])} DELTA payloads"
        )
        return removed

    async def cleanup_kind(self, kind: SnapshotKind, keep: int) -> List[str]:
        snapshots = await self.store.list_with_payload(kind)
        expired = snapshots[max(keep, 0):]

        removed = []
        for snapshot in reversed(expired):
            if snapshot.is_resumable:
                logger.info(
                    f"Keeping payload {snapshot.file_name}: snapshot {snapshot.id} "
                    f"is still resumable ({snapshot.processing_status.value})"
                )
                continue

            path = self.data_dir / snapshot.file_name
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.error(f"Failed to delete payload {path}: {e}")
                continue

            await self.store.mark_payload_deleted(snapshot)
            removed.append(snapshot.file_name)
            logger.info(f"Deleted {kind.value} payload {snapshot.file_name}")

        return removed

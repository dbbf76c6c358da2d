"""
Upsert validated LEI records with change detection and an audit trail
"""

from dataclasses import dataclass
from datetime import datetime, date
from typing import Any, Dict, List, Optional
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.base import AuditAction
from models.lei_record import LEIRecord, LEIRecordAudit
from schemas.lei import LEIRecordCreate, TRACKED_FIELDS

logger = logging.getLogger(__name__)


@dataclass
class UpsertResult:
    """Outcome counts for one batch"""
    created: int = 0
    updated: int = 0
    unchanged: int = 0

    @property
    def total(self) -> int:
        return self.created + self.updated + self.unchanged


def _json_value(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, list):
        return list(value)
    return value


def record_snapshot(record: LEIRecord) -> Dict[str, Any]:
    """JSON-serialisable copy of a record's tracked state"""
    snapshot = {"lei": record.lei}
    for field in TRACKED_FIELDS:
        snapshot[field] = _json_value(getattr(record, field))
    return snapshot


class LEIRecordLoader:
    """
    Apply batches of records to the store, keyed by LEI.

    Ensures:
    - No duplicate rows on repeated runs (unique LEI)
    - Only changed tracked fields are written; unchanged records are skipped
    - Every create or update writes exactly one audit row
    - Re-applying the same batch is a no-op (no writes, no audit rows)

    The loader only flushes. The caller owns the transaction so the batch
    and the snapshot checkpoint commit together.
    """

    def __init__(self, db_session: AsyncSession, changed_by: str = "system"):
        self.db = db_session
        self.changed_by = changed_by

    async def apply_batch(
        self,
        records: List[LEIRecordCreate],
        source_file_id: Optional[uuid.UUID] = None,
    ) -> UpsertResult:
        """
        Upsert a batch of validated records.

        Args:
            records: Validated records, in file order
            source_file_id: Snapshot the records came from

        Returns:
            UpsertResult with created / updated / unchanged counts
        """
        result = UpsertResult()
        if not records:
            return result

        keys = {record.lei for record in records}
        rows = await self.db.execute(select(LEIRecord).where(LEIRecord.lei.in_(keys)))
        existing: Dict[str, LEIRecord] = {row.lei: row for row in rows.scalars().all()}

        for record in records:
            current = existing.get(record.lei)
            if current is None:
                existing[record.lei] = self._create(record, source_file_id)
                result.created += 1
            elif self._update(current, record, source_file_id):
                result.updated += 1
            else:
                result.unchanged += 1

        await self.db.flush()

        logger.debug(
            f"Applied batch of {len(records)}: {result.created} created, "
            f"{result.updated} updated, {result.unchanged} unchanged"
        )
        return result

    def _create(self, record: LEIRecordCreate, source_file_id: Optional[uuid.UUID]) -> LEIRecord:
        now = datetime.utcnow()
        row = LEIRecord(
            id=uuid.uuid4(),
            lei=record.lei,
            source_file_id=source_file_id,
            changed_fields=None,
            created_at=now,
            updated_at=now,
            **record.tracked_values(),
        )
        self.db.add(row)
        self.db.add(LEIRecordAudit(
            id=uuid.uuid4(),
            lei_record_id=row.id,
            lei=row.lei,
            action=AuditAction.CREATE,
            previous_snapshot=None,
            record_snapshot=record_snapshot(row),
            changed_fields=None,
            source_file_id=source_file_id,
            changed_by=self.changed_by,
            created_at=now,
        ))
        return row

    def _update(
        self, row: LEIRecord, record: LEIRecordCreate, source_file_id: Optional[uuid.UUID]
    ) -> bool:
        """Write changed tracked fields; returns False when nothing changed"""
        incoming = record.tracked_values()
        changes = {}
        for field, new_value in incoming.items():
            old_value = getattr(row, field)
            if old_value != new_value:
                changes[field] = {"old": _json_value(old_value), "new": _json_value(new_value)}

        if not changes:
            return False

        previous = record_snapshot(row)
        for field in changes:
            setattr(row, field, incoming[field])
        row.changed_fields = changes
        row.source_file_id = source_file_id
        row.updated_at = datetime.utcnow()

        self.db.add(LEIRecordAudit(
            id=uuid.uuid4(),
            lei_record_id=row.id,
            lei=row.lei,
            action=AuditAction.UPDATE,
            previous_snapshot=previous,
            record_snapshot=record_snapshot(row),
            changed_fields=changes,
            source_file_id=source_file_id,
            changed_by=self.changed_by,
            created_at=row.updated_at,
        ))
        return True

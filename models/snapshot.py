from sqlalchemy import Column, String, Integer, BigInteger, Enum, DateTime, Text, Index, Uuid
from datetime import datetime
import uuid
from models.base import Base, SnapshotKind, ProcessingStatus, FailureCategory


class SnapshotFile(Base):
    """
    One row per downloaded GLEIF dataset version.

    Purpose:
    - Resume processing from the last committed record (checkpoint_key)
    - Track progress counters for status reporting
    - Track retry eligibility and failure category

    Design:
    - total_records is established once, on the first pass over the file,
      and reused unchanged by every resumed pass
    - checkpoint_key only advances together with a committed batch
    - rows are never deleted; retention removes the payload on disk and
      stamps payload_deleted_at
    """
    __tablename__ = "source_files"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    # File identification
    kind = Column(Enum(SnapshotKind), nullable=False, index=True)
    file_name = Column(String(500), nullable=False)
    source_uri = Column(String(1000), nullable=False)
    file_size = Column(BigInteger, default=0)
    file_hash = Column(String(64), nullable=True, index=True)  # SHA-256
    downloaded_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    # Processing status
    processing_status = Column(
        Enum(ProcessingStatus), default=ProcessingStatus.PENDING, nullable=False, index=True
    )
    total_records = Column(Integer, default=0, nullable=False)
    processed_records = Column(Integer, default=0, nullable=False)
    failed_records = Column(Integer, default=0, nullable=False)
    checkpoint_key = Column(String(20), default="", nullable=False)  # Last committed LEI

    processing_started_at = Column(DateTime, nullable=True)
    processing_completed_at = Column(DateTime, nullable=True)
    processing_error = Column(Text, nullable=True)

    # Retry tracking
    retry_count = Column(Integer, default=0, nullable=False)
    max_retries = Column(Integer, default=3, nullable=False)
    failure_category = Column(Enum(FailureCategory), nullable=True)

    # Retention
    payload_deleted_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_source_files_kind_downloaded", "kind", "downloaded_at"),
        Index("idx_source_files_kind_status", "kind", "processing_status"),
    )

    @property
    def percent_complete(self) -> float:
        """processed / total * 100, or 0 while the total is unknown"""
        if not self.total_records:
            return 0.0
        return round(self.processed_records / self.total_records * 100, 2)

    @property
    def is_resumable(self) -> bool:
        """Whether a later run may still pick this snapshot up"""
        if self.processing_status in (ProcessingStatus.PENDING, ProcessingStatus.IN_PROGRESS):
            return True
        if self.processing_status == ProcessingStatus.FAILED:
            category = self.failure_category or FailureCategory.UNKNOWN
            return category.retryable and self.retry_count < self.max_retries
        return False

from sqlalchemy import Column, Integer, Enum, DateTime, Text, Uuid
from datetime import datetime
from models.base import Base, SnapshotKind, JobState


class JobStatus(Base):
    """
    Run state per job kind (FULL, DELTA). Singleton per kind.

    The status column is the mutual-exclusion token for the scheduler:
    a run starts only after a conditional UPDATE moved it to RUNNING.
    current_snapshot_id is a weak reference used for lookups only.
    """
    __tablename__ = "file_processing_status"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_kind = Column(Enum(SnapshotKind), nullable=False, unique=True)

    status = Column(Enum(JobState), default=JobState.IDLE, nullable=False)
    current_snapshot_id = Column(Uuid, nullable=True)
    error_message = Column(Text, nullable=True)

    last_run_at = Column(DateTime, nullable=True)
    last_success_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

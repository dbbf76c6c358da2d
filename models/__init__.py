"""
SQLAlchemy ORM models for database tables.

This package defines the database schema using SQLAlchemy ORM models:

Models:
    base: Base declarative class and shared enums (SnapshotKind,
          ProcessingStatus, JobState, FailureCategory, AuditAction)
    snapshot: Downloaded GLEIF file metadata, counters and checkpoint
    job_status: Per job kind run state (mutual-exclusion token)
    lei_record: LEI records and their audit trail

Usage:
    from models.snapshot import SnapshotFile
    from models.job_status import JobStatus
    from models.lei_record import LEIRecord, LEIRecordAudit
    from models.base import SnapshotKind, ProcessingStatus, JobState

Ownership:
    - SnapshotFile and JobStatus rows are written only by the ingestion pipeline
    - LEIRecord / LEIRecordAudit rows are written only by the upsert engine
"""

__all__ = [
    "Base",
    "SnapshotKind",
    "ProcessingStatus",
    "JobState",
    "FailureCategory",
    "AuditAction",
    "SnapshotFile",
    "JobStatus",
    "LEIRecord",
    "LEIRecordAudit",
]

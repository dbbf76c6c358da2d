from sqlalchemy import JSON
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ============================================================================
# ENUMS
# ============================================================================

class SnapshotKind(str, enum.Enum):
    """Dataset flavour published by GLEIF; also the job kind"""
    FULL = "FULL"
    DELTA = "DELTA"


class ProcessingStatus(str, enum.Enum):
    """Snapshot file processing status"""
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class JobState(str, enum.Enum):
    """Per job kind run state"""
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class FailureCategory(str, enum.Enum):
    """Closed set of snapshot failure categories"""
    SCHEMA_ERROR = "SCHEMA_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    FILE_CORRUPTION = "FILE_CORRUPTION"
    UNKNOWN = "UNKNOWN"

    @property
    def retryable(self) -> bool:
        return self is not FailureCategory.FILE_CORRUPTION


class AuditAction(str, enum.Enum):
    """Audit trail action"""
    CREATE = "CREATE"
    UPDATE = "UPDATE"

"""
Custom exceptions for the LEI ingestion pipeline with structured error context.

Every failure that aborts a run carries a ``FailureCategory`` assigned where
the failure happens (acquisition, decoding, storage). The category travels
with the exception up to the SnapshotFile row, so nothing downstream has to
guess the kind of failure from a message string.

Exception Hierarchy:
    IngestionError (base)
    ├── AcquisitionError
    │   ├── NetworkError              (retryable, NETWORK_ERROR)
    │   ├── FileCorruptionError       (not retryable, FILE_CORRUPTION)
    │   └── DuplicateSnapshotError    (no-op, file already processed)
    ├── ProcessingError
    │   ├── RecordValidationError     (per record, recovered locally)
    │   └── CheckpointNotFoundError   (not retryable, FILE_CORRUPTION)
    ├── LoadError
    │   ├── SchemaError               (retryable, SCHEMA_ERROR)
    │   └── UpsertError               (retryable, UNKNOWN)
    ├── JobControlError
    │   ├── JobAlreadyRunningError    (conflict)
    │   ├── NotFoundError             (not found)
    │   │   ├── SnapshotNotFoundError
    │   │   ├── JobStatusNotFoundError
    │   │   └── RecordNotFoundError
    │   ├── SnapshotStateError        (conflict)
    │   └── RetryExhaustedError       (retry exhausted)
    ├── ConfigurationError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime

from models.base import FailureCategory


class IngestionError(Exception):
    """
    Base exception for all ingestion errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (snapshot id, url, etc.)
        original_exception: The original exception that was caught (if any)
        category: Failure category persisted on the snapshot row
    """

    category: FailureCategory = FailureCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "category": self.category.value,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(IngestionError):
    """
    Mixin for failures where re-attempting the same snapshot from its
    checkpoint may succeed.
    """
    retryable = True


class NonRetryableError(IngestionError):
    """
    Mixin for failures where the snapshot itself is unusable and the
    operator has to force a fresh download.
    """
    retryable = False


# ============================================================================
# Acquisition Errors
# ============================================================================

class AcquisitionError(IngestionError):
    """Base exception for snapshot download and registration failures."""
    pass


class NetworkError(RetryableError, AcquisitionError):
    """
    Transport failure while fetching a snapshot.

    Context should include:
        - url: The download URL
        - status_code: HTTP status code (if applicable)
        - retry_count: Number of attempts made
    """
    category = FailureCategory.NETWORK_ERROR


class FileCorruptionError(NonRetryableError, AcquisitionError):
    """
    Snapshot archive cannot be decompressed or decoded.

    Context should include:
        - file_path: Path to the downloaded archive
        - member: Archive member being read (if applicable)
    """
    category = FailureCategory.FILE_CORRUPTION


class DuplicateSnapshotError(AcquisitionError):
    """Downloaded file hash matches a snapshot that was already processed."""

    def __init__(self, message: str, existing_snapshot_id=None, **kwargs):
        super().__init__(message, **kwargs)
        self.existing_snapshot_id = existing_snapshot_id


# ============================================================================
# Processing Errors
# ============================================================================

class ProcessingError(IngestionError):
    """Base exception for streaming processor failures."""
    pass


class RecordValidationError(ProcessingError):
    """
    A single record failed validation. Never aborts a run.

    Context should include:
        - lei: Record key (if it could be read)
        - position: 1-based line position in the snapshot
    """
    category = FailureCategory.SCHEMA_ERROR


class CheckpointNotFoundError(NonRetryableError, ProcessingError):
    """
    The stream ended without ever reaching the snapshot's checkpoint key.

    The file no longer matches the one the checkpoint was taken from, so
    resuming would silently reprocess from an arbitrary point.
    """
    category = FailureCategory.FILE_CORRUPTION


# ============================================================================
# Load Errors
# ============================================================================

class LoadError(IngestionError):
    """Base exception for batch flush failures."""
    pass


class SchemaError(RetryableError, LoadError):
    """
    Batch rejected by a data-shape or constraint violation.

    Context should include:
        - first_lei / last_lei: Key range of the failed batch
        - batch_size: Number of records in the batch
    """
    category = FailureCategory.SCHEMA_ERROR


class UpsertError(RetryableError, LoadError):
    """Batch failed for a reason that could not be classified."""
    category = FailureCategory.UNKNOWN


# ============================================================================
# Job Control Errors
# ============================================================================

class JobControlError(IngestionError):
    """Base exception for trigger/resume requests that cannot be honoured."""
    pass


class JobAlreadyRunningError(JobControlError):
    """A run of this job kind (or a conflicting kind) is already RUNNING."""
    pass


class NotFoundError(JobControlError):
    """Base for lookups that matched nothing."""
    pass


class SnapshotNotFoundError(NotFoundError):
    """No snapshot exists with the requested id."""
    pass


class JobStatusNotFoundError(NotFoundError):
    """No status row exists yet for the requested job kind."""
    pass


class RecordNotFoundError(NotFoundError):
    """No LEI record (and no audit history) exists for the requested LEI."""
    pass


class SnapshotStateError(JobControlError):
    """The snapshot is in a state that cannot be resumed (e.g. COMPLETED)."""
    pass


class RetryExhaustedError(JobControlError):
    """The snapshot used up its retries or failed in a non-retryable way."""
    pass


class ConfigurationError(IngestionError):
    """Unparsable scheduler or pipeline configuration. Process-fatal."""
    pass

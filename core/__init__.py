"""
Core utilities and configuration for the LEI ingestion service.

Modules:
    config: Application configuration and environment variable management
    database: Database connection and session management
    exceptions: Exception hierarchy with failure categories
    logging: Logging configuration

Usage:
    from core.config import settings
    from core.database import async_session_maker
    from core.exceptions import NetworkError, FileCorruptionError
    from core.logging import setup_logging
"""

__all__ = [
    "settings",
    "async_session_maker",
    "get_session",
    "setup_logging",
    # Exceptions
    "IngestionError",
    "RetryableError",
    "NonRetryableError",
    "AcquisitionError",
    "NetworkError",
    "FileCorruptionError",
    "DuplicateSnapshotError",
    "ProcessingError",
    "RecordValidationError",
    "CheckpointNotFoundError",
    "LoadError",
    "SchemaError",
    "UpsertError",
    "JobControlError",
    "JobAlreadyRunningError",
    "NotFoundError",
    "SnapshotNotFoundError",
    "JobStatusNotFoundError",
    "RecordNotFoundError",
    "SnapshotStateError",
    "RetryExhaustedError",
    "ConfigurationError",
]

"""
Pydantic schemas for data validation and serialization.

Schemas:
    lei: LEIRecordCreate, the validated shape every record must have before
         it reaches the upsert engine (ISO 17442 checksum, country codes,
         naive UTC dates)
    api: Request/response models for the HTTP boundary (job status,
         snapshot detail, records, audit history, errors)

Usage:
    from schemas.lei import LEIRecordCreate
    from schemas.api import JobStatusResponse, SnapshotFileResponse

Validation:
    Records that fail LEIRecordCreate validation are counted as failed by the
    streaming processor and skipped; they never abort a run.
"""

__all__ = [
    "LEIRecordCreate",
    "SnapshotFileResponse",
    "JobStatusResponse",
    "LEIRecordResponse",
    "LEIRecordAuditResponse",
    "HealthCheckResponse",
    "ErrorResponse",
]

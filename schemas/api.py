"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from uuid import UUID
from models.base import SnapshotKind, ProcessingStatus, JobState, FailureCategory, AuditAction


# ============================================================================
# Snapshot / Job Status Schemas
# ============================================================================

class SnapshotFileResponse(BaseModel):
    """Snapshot detail including computed progress"""
    id: UUID
    kind: SnapshotKind
    file_name: str
    source_uri: str
    file_size: Optional[int] = None
    file_hash: Optional[str] = None
    downloaded_at: datetime
    processing_status: ProcessingStatus
    total_records: int
    processed_records: int
    failed_records: int
    percent_complete: float
    checkpoint_key: str
    retry_count: int
    max_retries: int
    failure_category: Optional[FailureCategory] = None
    processing_error: Optional[str] = None
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
    payload_deleted_at: Optional[datetime] = None

    class Config:
        from_attributes = True
        use_enum_values = True


class JobStatusResponse(BaseModel):
    """Run state of one job kind with the active or most recent snapshot"""
    job_kind: SnapshotKind
    status: JobState
    current_snapshot_id: Optional[UUID] = None
    error_message: Optional[str] = None
    failure_category: Optional[FailureCategory] = None
    percent_complete: float = 0.0
    last_run_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    snapshot: Optional[SnapshotFileResponse] = None

    class Config:
        from_attributes = True
        use_enum_values = True
        json_schema_extra = {
            "example": {
                "job_kind": "FULL",
                "status": "RUNNING",
                "current_snapshot_id": "550e8400-e29b-41d4-a716-446655440000",
                "error_message": None,
                "failure_category": None,
                "percent_complete": 42.5,
                "last_run_at": "2024-01-14T02:00:00",
                "last_success_at": "2024-01-07T05:41:12"
            }
        }


class SyncAcceptedResponse(BaseModel):
    """Returned when a run was claimed and handed to a background worker"""
    message: str
    job_kind: SnapshotKind
    snapshot_id: Optional[UUID] = None

    class Config:
        use_enum_values = True


class CleanupResponse(BaseModel):
    """Retention cleanup outcome per kind"""
    removed: Dict[str, List[str]]


# ============================================================================
# LEI Record Schemas
# ============================================================================

class LEIRecordResponse(BaseModel):
    """Response model for an LEI record"""
    id: UUID
    lei: str
    legal_name: str
    other_names: Optional[List[str]] = None
    legal_jurisdiction: Optional[str] = None
    entity_category: Optional[str] = None
    entity_legal_form: Optional[str] = None
    entity_status: Optional[str] = None
    legal_address_line_1: Optional[str] = None
    legal_address_city: Optional[str] = None
    legal_address_region: Optional[str] = None
    legal_address_country: Optional[str] = None
    legal_address_postal_code: Optional[str] = None
    hq_address_line_1: Optional[str] = None
    hq_address_city: Optional[str] = None
    hq_address_region: Optional[str] = None
    hq_address_country: Optional[str] = None
    hq_address_postal_code: Optional[str] = None
    registration_authority: Optional[str] = None
    registration_number: Optional[str] = None
    registration_status: Optional[str] = None
    managing_lou: Optional[str] = None
    initial_registration_date: Optional[datetime] = None
    last_update_date: Optional[datetime] = None
    next_renewal_date: Optional[datetime] = None
    source_file_id: Optional[UUID] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class LEIRecordAuditResponse(BaseModel):
    """Response model for one audit entry"""
    id: UUID
    lei_record_id: UUID
    lei: str
    action: AuditAction
    previous_snapshot: Optional[Dict[str, Any]] = None
    record_snapshot: Dict[str, Any]
    changed_fields: Optional[Dict[str, Any]] = None
    source_file_id: Optional[UUID] = None
    changed_by: str
    created_at: datetime

    class Config:
        from_attributes = True
        use_enum_values = True


class PaginationMetadata(BaseModel):
    """Pagination metadata"""
    total_items: int
    total_pages: int
    current_page: int
    page_size: int
    has_next: bool
    has_previous: bool


class LEIRecordListResponse(BaseModel):
    """Paginated LEI records"""
    items: List[LEIRecordResponse]
    pagination: PaginationMetadata


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field(..., description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    jobs: List[JobStatusResponse] = Field(default_factory=list)


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[str] = None
    code: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        json_schema_extra = {
            "example": {
                "error": "JobAlreadyRunningError",
                "detail": "FULL sync is already running",
                "code": "conflict",
                "timestamp": "2024-01-15T10:30:00Z"
            }
        }

from sqlalchemy import Column, String, Enum, DateTime, Index, Uuid
from datetime import datetime
import uuid
from models.base import Base, JSONType, AuditAction


class LEIRecord(Base):
    """
    One row per Legal Entity Identifier, upserted by LEI.

    Field Mapping (GLEIF Level 1 JSON -> column):
    - LEI -> lei
    - Entity.LegalName -> legal_name
    - Entity.OtherEntityNames -> other_names
    - Entity.LegalAddress.* -> legal_address_*
    - Entity.HeadquartersAddress.* -> hq_address_*
    - Entity.RegistrationAuthority.* -> registration_authority / registration_number
    - Entity.LegalJurisdiction -> legal_jurisdiction
    - Entity.EntityCategory -> entity_category
    - Entity.LegalForm.EntityLegalFormCode -> entity_legal_form
    - Entity.EntityStatus -> entity_status
    - Registration.* -> registration_status, managing_lou, *_date
    """
    __tablename__ = "lei_records"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    lei = Column(String(20), nullable=False, unique=True, index=True)

    # Entity
    legal_name = Column(String(500), nullable=False)
    other_names = Column(JSONType, nullable=True)
    legal_jurisdiction = Column(String(10), nullable=True)
    entity_category = Column(String(255), nullable=True)
    entity_legal_form = Column(String(100), nullable=True)
    entity_status = Column(String(255), nullable=True)

    # Legal address
    legal_address_line_1 = Column(String(500), nullable=True)
    legal_address_city = Column(String(255), nullable=True)
    legal_address_region = Column(String(255), nullable=True)
    legal_address_country = Column(String(2), nullable=True)  # ISO 3166-1 alpha-2
    legal_address_postal_code = Column(String(255), nullable=True)

    # Headquarters address
    hq_address_line_1 = Column(String(500), nullable=True)
    hq_address_city = Column(String(255), nullable=True)
    hq_address_region = Column(String(255), nullable=True)
    hq_address_country = Column(String(2), nullable=True)
    hq_address_postal_code = Column(String(255), nullable=True)

    # Registration
    registration_authority = Column(String(100), nullable=True)
    registration_number = Column(String(255), nullable=True)
    registration_status = Column(String(255), nullable=True)
    managing_lou = Column(String(20), nullable=True)
    initial_registration_date = Column(DateTime, nullable=True)
    last_update_date = Column(DateTime, nullable=True)
    next_renewal_date = Column(DateTime, nullable=True)

    # Provenance
    source_file_id = Column(Uuid, nullable=True, index=True)
    changed_fields = Column(JSONType, nullable=True)  # Last change details

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class LEIRecordAudit(Base):
    """
    Audit trail written alongside every upsert that changed something.

    - previous_snapshot: full record before the change (None on CREATE)
    - record_snapshot: full record after the change
    - changed_fields: {"field": {"old": ..., "new": ...}}
    """
    __tablename__ = "lei_record_audits"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    lei_record_id = Column(Uuid, nullable=False, index=True)
    lei = Column(String(20), nullable=False)
    action = Column(Enum(AuditAction), nullable=False)

    previous_snapshot = Column(JSONType, nullable=True)
    record_snapshot = Column(JSONType, nullable=False)
    changed_fields = Column(JSONType, nullable=True)

    source_file_id = Column(Uuid, nullable=True)
    changed_by = Column(String(100), nullable=False, default="system")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_lei_audit_lei_created", "lei", "created_at"),
    )

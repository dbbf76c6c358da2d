"""
Pydantic schemas for validated LEI records
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
import re

LEI_PATTERN = re.compile(r"^[A-Z0-9]{18}[0-9]{2}$")

# Fields compared for change detection and copied into audit snapshots
TRACKED_FIELDS = (
    "legal_name",
    "other_names",
    "legal_jurisdiction",
    "entity_category",
    "entity_legal_form",
    "entity_status",
    "legal_address_line_1",
    "legal_address_city",
    "legal_address_region",
    "legal_address_country",
    "legal_address_postal_code",
    "hq_address_line_1",
    "hq_address_city",
    "hq_address_region",
    "hq_address_country",
    "hq_address_postal_code",
    "registration_authority",
    "registration_number",
    "registration_status",
    "managing_lou",
    "initial_registration_date",
    "last_update_date",
    "next_renewal_date",
)


def read_lei(value: Any) -> Optional[str]:
    """
    The LEI of a raw GLEIF record, normalised the way it is stored.

    Accepts a plain string or the {"$": "..."} wrapper. Missing or blank
    values are None; anything else that is not a string is a ValueError.
    """
    if isinstance(value, dict):
        value = value.get("$")
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"LEI must be a string, got {type(value).__name__}")
    return value.strip().upper() or None


def lei_checksum_valid(lei: str) -> bool:
    """ISO 17442 check digits (ISO 7064 MOD 97-10, same scheme as IBAN)"""
    digits = "".join(str(int(ch, 36)) for ch in lei)
    return int(digits) % 97 == 1


class LEIRecordCreate(BaseModel):
    """
    Schema for an LEI record ready to be upserted.

    Ensures:
    - LEI is 20 characters with valid check digits
    - Legal name is present
    - Country codes are ISO 3166-1 alpha-2
    - Dates are naive UTC (matches how DateTime columns round-trip)
    - Empty strings are stored as None so repeated loads compare equal
    """

    lei: str = Field(..., min_length=20, max_length=20)

    # Entity
    legal_name: str = Field(..., min_length=1, max_length=500)
    other_names: List[str] = Field(default_factory=list)
    legal_jurisdiction: Optional[str] = Field(None, max_length=10)
    entity_category: Optional[str] = Field(None, max_length=255)
    entity_legal_form: Optional[str] = Field(None, max_length=100)
    entity_status: Optional[str] = Field(None, max_length=255)

    # Legal address
    legal_address_line_1: Optional[str] = Field(None, max_length=500)
    legal_address_city: Optional[str] = Field(None, max_length=255)
    legal_address_region: Optional[str] = Field(None, max_length=255)
    legal_address_country: Optional[str] = None
    legal_address_postal_code: Optional[str] = Field(None, max_length=255)

    # Headquarters address
    hq_address_line_1: Optional[str] = Field(None, max_length=500)
    hq_address_city: Optional[str] = Field(None, max_length=255)
    hq_address_region: Optional[str] = Field(None, max_length=255)
    hq_address_country: Optional[str] = None
    hq_address_postal_code: Optional[str] = Field(None, max_length=255)

    # Registration
    registration_authority: Optional[str] = Field(None, max_length=100)
    registration_number: Optional[str] = Field(None, max_length=255)
    registration_status: Optional[str] = Field(None, max_length=255)
    managing_lou: Optional[str] = Field(None, max_length=20)
    initial_registration_date: Optional[datetime] = None
    last_update_date: Optional[datetime] = None
    next_renewal_date: Optional[datetime] = None

    @validator("lei", pre=True)
    def validate_lei(cls, v):
        """Normalise and validate the identifier"""
        if not isinstance(v, str):
            raise ValueError("LEI must be a string")
        v = v.strip().upper()
        if not LEI_PATTERN.match(v):
            raise ValueError(f"LEI {v!r} is not 18 alphanumerics followed by 2 check digits")
        if not lei_checksum_valid(v):
            raise ValueError(f"LEI {v!r} has invalid check digits")
        return v

    @validator("legal_name")
    def clean_legal_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Legal name cannot be empty after stripping")
        return v

    @validator(
        "legal_jurisdiction", "entity_category", "entity_legal_form", "entity_status",
        "legal_address_line_1", "legal_address_city", "legal_address_region",
        "legal_address_postal_code", "hq_address_line_1", "hq_address_city",
        "hq_address_region", "hq_address_postal_code", "registration_authority",
        "registration_number", "registration_status", "managing_lou",
        pre=True,
    )
    def blank_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @validator("legal_address_country", "hq_address_country", pre=True)
    def validate_country(cls, v):
        if v is None or str(v).strip() == "":
            return None
        v = str(v).strip().upper()
        if not re.match(r"^[A-Z]{2}$", v):
            raise ValueError(f"Country code {v!r} is not ISO 3166-1 alpha-2")
        return v

    @validator("other_names", pre=True)
    def clean_other_names(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [v.strip()] if v.strip() else []
        return [str(name).strip() for name in v if str(name).strip()]

    @validator("initial_registration_date", "last_update_date", "next_renewal_date")
    def to_naive_utc(cls, v):
        if v is not None and v.tzinfo is not None:
            v = v.astimezone(timezone.utc).replace(tzinfo=None)
        return v

    def tracked_values(self) -> Dict[str, Any]:
        """Values of the fields that take part in change detection"""
        return {field: getattr(self, field) for field in TRACKED_FIELDS}

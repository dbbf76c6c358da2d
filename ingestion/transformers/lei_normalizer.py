"""
Transform GLEIF Level 1 JSON records into validated LEIRecordCreate models
"""

from typing import Dict, Any, Optional, List
from datetime import datetime
import logging

from pydantic import ValidationError

from core.exceptions import RecordValidationError
from schemas.lei import LEIRecordCreate, read_lei

logger = logging.getLogger(__name__)


class LEINormalizer:
    """
    Map the GLEIF golden copy record shape onto the flat record schema.

    Handles:
    - "$"-wrapped scalar values ({"$": "value"}) as well as plain values
    - Missing optional sections (HeadquartersAddress, RegistrationAuthority)
    - Multi-line addresses (first line only, extra lines are appended)
    - ISO 8601 dates with offsets
    """

    def normalize(self, record: Dict[str, Any], position: Optional[int] = None) -> LEIRecordCreate:
        """
        Normalize one raw record.

        Returns:
            Validated LEIRecordCreate Pydantic model

        Raises:
            RecordValidationError: If the record cannot be mapped or validated
        """
        lei = None
        try:
            lei = read_lei(record.get("LEI"))
            entity = record.get("Entity") or {}
            registration = record.get("Registration") or {}
            if not isinstance(entity, dict) or not isinstance(registration, dict):
                raise ValueError("Entity and Registration must be objects")

            legal_address = self._section(entity, "LegalAddress")
            hq_address = self._section(entity, "HeadquartersAddress")
            authority = self._section(entity, "RegistrationAuthority")
            legal_form = self._section(entity, "LegalForm")

            return LEIRecordCreate(
                lei=lei,
                legal_name=self._text(entity.get("LegalName")),
                other_names=self._other_names(entity.get("OtherEntityNames")),
                legal_jurisdiction=self._text(entity.get("LegalJurisdiction")),
                entity_category=self._text(entity.get("EntityCategory")),
                entity_legal_form=self._text(legal_form.get("EntityLegalFormCode")),
                entity_status=self._text(entity.get("EntityStatus")),
                legal_address_line_1=self._address_line(legal_address),
                legal_address_city=self._text(legal_address.get("City")),
                legal_address_region=self._text(legal_address.get("Region")),
                legal_address_country=self._text(legal_address.get("Country")),
                legal_address_postal_code=self._text(legal_address.get("PostalCode")),
                hq_address_line_1=self._address_line(hq_address),
                hq_address_city=self._text(hq_address.get("City")),
                hq_address_region=self._text(hq_address.get("Region")),
                hq_address_country=self._text(hq_address.get("Country")),
                hq_address_postal_code=self._text(hq_address.get("PostalCode")),
                registration_authority=self._text(authority.get("RegistrationAuthorityID")),
                registration_number=self._text(authority.get("RegistrationAuthorityEntityID")),
                registration_status=self._text(registration.get("RegistrationStatus")),
                managing_lou=self._text(registration.get("ManagingLOU")),
                initial_registration_date=self._parse_datetime(registration.get("InitialRegistrationDate")),
                last_update_date=self._parse_datetime(registration.get("LastUpdateDate")),
                next_renewal_date=self._parse_datetime(registration.get("NextRenewalDate")),
            )

        except (ValidationError, ValueError, TypeError) as e:
            raise RecordValidationError(
                f"Record failed validation: {e}",
                context={"lei": lei, "position": position},
                original_exception=e
            )

    @staticmethod
    def _text(value: Any) -> Optional[str]:
        """Unwrap {"$": value} and return a string (or None)"""
        if isinstance(value, dict):
            value = value.get("$")
        if value is None:
            return None
        if isinstance(value, (dict, list)):
            raise ValueError(f"Expected a scalar value, got {type(value).__name__}")
        return str(value)

    @staticmethod
    def _section(parent: Dict[str, Any], name: str) -> Dict[str, Any]:
        section = parent.get(name) or {}
        if not isinstance(section, dict):
            raise ValueError(f"{name} must be an object")
        return section

    def _address_line(self, address: Dict[str, Any]) -> Optional[str]:
        first = self._text(address.get("FirstAddressLine"))
        additional = address.get("AdditionalAddressLine") or []
        if not isinstance(additional, list):
            additional = [additional]
        parts = [first] + [self._text(line) for line in additional]
        parts = [part.strip() for part in parts if part and part.strip()]
        return ", ".join(parts) if parts else None

    def _other_names(self, value: Any) -> List[str]:
        if value is None:
            return []
        # GLEIF wraps the list as {"OtherEntityName": [...]} in some exports
        if isinstance(value, dict):
            value = value.get("OtherEntityName", value.get("$"))
            if value is None:
                return []
        if not isinstance(value, list):
            value = [value]
        names = []
        for item in value:
            name = self._text(item)
            if name and name.strip():
                names.append(name.strip())
        return names

    @staticmethod
    def _parse_datetime(value: Any) -> Optional[datetime]:
        """Parse ISO 8601; unparsable dates are a validation failure"""
        if isinstance(value, dict):
            value = value.get("$")
        if value is None or value == "":
            return None
        if isinstance(value, datetime):
            return value
        try:
            return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise ValueError(f"Invalid date {value!r}")

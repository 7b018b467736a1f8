"""Field mappings between internal contacts and external CRM records.

Defines:
- FieldMap: a declarative table from internal contact attributes to the
  field names a given CRM uses on the wire.
- ACME_FIELD_MAP: the AcmeCRM table (``acme_*`` names, fixed source tag).
- get_field_map(): resolves a table by CRM identifier at dispatch time.
- to_external() / from_external(): the two pure conversion functions.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from ..models.contact import Contact


class AcmeField(str, Enum):
    """AcmeCRM wire field names."""
    ID = "acme_id"
    FIRST_NAME = "acme_first_name"
    LAST_NAME = "acme_last_name"
    EMAIL = "acme_email"
    PHONE = "acme_phone"
    COMPANY = "acme_company"
    JOB_TITLE = "acme_job_title"
    LINKEDIN = "acme_linkedin"
    NOTES = "acme_notes"
    SOURCE = "acme_source"


class UnknownCrmError(LookupError):
    """Raised when no field map is registered for a CRM identifier."""


@dataclass(frozen=True)
class FieldMap:
    """Mapping table for one target CRM."""

    crm: str
    fields: Dict[str, str]
    id_field: str
    source_field: Optional[str] = None
    source_value: Optional[str] = None


ACME_FIELD_MAP = FieldMap(
    crm="acme",
    fields={
        "first_name": AcmeField.FIRST_NAME.value,
        "last_name": AcmeField.LAST_NAME.value,
        "email": AcmeField.EMAIL.value,
        "phone": AcmeField.PHONE.value,
        "company": AcmeField.COMPANY.value,
        "title": AcmeField.JOB_TITLE.value,
        "linkedin_url": AcmeField.LINKEDIN.value,
        "notes": AcmeField.NOTES.value,
    },
    id_field=AcmeField.ID.value,
    source_field=AcmeField.SOURCE.value,
    source_value="Linq QR Scan",
)

FIELD_MAPS: Dict[str, FieldMap] = {
    ACME_FIELD_MAP.crm: ACME_FIELD_MAP,
}


def register_field_map(field_map: FieldMap) -> None:
    """Register (or replace) the mapping table for a CRM."""
    FIELD_MAPS[field_map.crm] = field_map


def get_field_map(crm: str = "acme") -> FieldMap:
    try:
        return FIELD_MAPS[crm]
    except KeyError:
        raise UnknownCrmError(f"No field mapping registered for CRM '{crm}'") from None


def _normalize_keys(record: Mapping[Any, Any]) -> Dict[str, Any]:
    # Enum members and plain strings name the same field
    normalized: Dict[str, Any] = {}
    for key, value in record.items():
        name = key.value if isinstance(key, Enum) else str(key)
        if name not in normalized or normalized[name] is None:
            normalized[name] = value
    return normalized


def to_external(contact: Contact, crm: str = "acme") -> Dict[str, Any]:
    """Convert a contact into the target CRM's record shape.

    Every mapped field is present in the result; missing values become None.
    """
    field_map = get_field_map(crm)

    record: Dict[str, Any] = {
        external: getattr(contact, internal, None)
        for internal, external in field_map.fields.items()
    }
    if field_map.source_field:
        record[field_map.source_field] = field_map.source_value

    return record


def from_external(
    record: Mapping[Any, Any],
    created_by: str,
    crm: str = "acme",
) -> Contact:
    """Build an unsaved contact from a CRM record.

    Keys may be plain strings or the CRM's field enum members.
    """
    field_map = get_field_map(crm)
    data = _normalize_keys(record)

    values = {
        internal: data.get(external)
        for internal, external in field_map.fields.items()
    }

    return Contact(
        **values,
        acme_id=data.get(field_map.id_field),
        created_by=created_by,
    )

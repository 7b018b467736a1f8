"""Contact model definitions."""
from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from sqlalchemy import DateTime, Index, Integer, String, Text, event
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


# HTML5-style address shape: permissive local part, dotted hostname labels
EMAIL_PATTERN = re.compile(
    r"\A[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*\Z"
)
LINKEDIN_URL_PATTERN = re.compile(r"\Ahttps?://(?:www\.)?linkedin\.com/.*\Z", re.IGNORECASE)

STRING_FIELDS = (
    "first_name",
    "last_name",
    "email",
    "phone",
    "company",
    "title",
    "linkedin_url",
    "notes",
)
TITLEIZED_FIELDS = ("first_name", "last_name", "company")
MAX_LENGTHS = {
    "first_name": 100,
    "last_name": 100,
    "phone": 20,
    "company": 200,
    "title": 150,
}


class SyncStatus(str, Enum):
    """Derived CRM sync status of a contact."""
    SYNCED = "synced"
    PENDING = "pending"
    PARTIAL = "partial"


class ContactValidationError(ValueError):
    """Raised when a contact fails validation before persistence."""

    def __init__(self, errors: Dict[str, List[str]]):
        self.errors = errors
        super().__init__("; ".join(self.full_messages))

    @property
    def full_messages(self) -> List[str]:
        return [
            f"{field.replace('_', ' ').capitalize()} {message}"
            for field, messages in self.errors.items()
            for message in messages
        ]


def titleize(value: str) -> str:
    """Capitalize each word, lower-casing the remainder ("mary-JANE o'neil" -> "Mary-Jane O'neil")."""
    return re.sub(
        r"[^\s-]+",
        lambda match: match.group(0)[:1].upper() + match.group(0)[1:].lower(),
        value,
    )


class Contact(Base):
    """Contact captured locally and pushed to AcmeCRM."""

    __tablename__ = "contact"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    company: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    title: Mapped[Optional[str]] = mapped_column(String(150), nullable=True)
    linkedin_url: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[str] = mapped_column(String, nullable=False)
    acme_id: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    sync_lease_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    sync_leased_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_contact_company", "company"),
        Index("ix_contact_created_at", "created_at"),
        Index("ix_contact_synced_at", "synced_at"),
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    @property
    def sync_status(self) -> SyncStatus:
        if self.acme_id and self.synced_at:
            return SyncStatus.SYNCED
        if not self.acme_id:
            return SyncStatus.PENDING
        # acme_id without a timestamp; the sync job always writes both together
        return SyncStatus.PARTIAL

    def normalize(self) -> None:
        """Strip whitespace and apply casing rules to string attributes."""
        for field in STRING_FIELDS:
            value = getattr(self, field)
            if isinstance(value, str):
                value = value.strip() or None
            setattr(self, field, value)

        if self.email:
            self.email = self.email.lower()
        for field in TITLEIZED_FIELDS:
            value = getattr(self, field)
            if value:
                setattr(self, field, titleize(value))

    def validation_errors(self) -> Dict[str, List[str]]:
        errors: Dict[str, List[str]] = {}

        def add(field: str, message: str) -> None:
            errors.setdefault(field, []).append(message)

        for field in ("first_name", "last_name", "email", "created_by"):
            if not getattr(self, field):
                add(field, "can't be blank")

        for field, limit in MAX_LENGTHS.items():
            value = getattr(self, field)
            if value and len(value) > limit:
                add(field, f"is too long (maximum is {limit} characters)")

        if self.email and not EMAIL_PATTERN.match(self.email):
            add("email", "Invalid email format")
        if self.linkedin_url and not LINKEDIN_URL_PATTERN.match(self.linkedin_url):
            add("linkedin_url", "Invalid LinkedIn URL format")

        return errors

    def full_clean(self) -> None:
        """Normalize then validate; raise ContactValidationError on failure."""
        self.normalize()
        errors = self.validation_errors()
        if errors:
            raise ContactValidationError(errors)

    def touch(self) -> None:
        self.updated_at = datetime.utcnow()


@event.listens_for(Contact, "before_insert")
@event.listens_for(Contact, "before_update")
def _clean_before_save(mapper, connection, target: Contact) -> None:
    target.full_clean()

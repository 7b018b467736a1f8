"""Contact persistence, listing and reverse sync from AcmeCRM."""
import logging
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models.contact import Contact, ContactValidationError
from .acme_crm import AcmeCrmClient, AcmeCrmError
from .field_mapping import AcmeField, from_external
from .task_queue import enqueue_sync


logger = logging.getLogger(__name__)

MAX_BULK_CONTACTS = 100
CONTACT_FIELDS = ("first_name", "last_name", "email", "phone", "company", "title", "linkedin_url", "notes")


class DuplicateEmailError(ContactValidationError):
    """Another contact already uses this email (case-insensitive)."""

    def __init__(self, email: str):
        super().__init__({"email": ["has already been taken"]})
        self.email = email


def email_taken(db: Session, email: str, exclude_id: Optional[int] = None) -> bool:
    query = select(Contact.id).where(func.lower(Contact.email) == email.lower())
    if exclude_id is not None:
        query = query.where(Contact.id != exclude_id)
    return db.scalar(query.limit(1)) is not None


def _flush_new_contacts(db: Session, contacts: Sequence[Contact]) -> None:
    """Insert new contacts, reporting a lost race on the email constraint as a duplicate."""
    try:
        db.flush()
    except IntegrityError as e:
        db.rollback()
        for contact in contacts:
            if contact.email and email_taken(db, contact.email):
                raise DuplicateEmailError(contact.email) from e
        raise


def build_contact(data: dict[str, Any], created_by: str) -> Contact:
    """Build, normalize and validate an unsaved contact from request data."""
    contact = Contact(
        **{field: data.get(field) for field in CONTACT_FIELDS},
        created_by=created_by,
    )
    contact.full_clean()
    return contact


def create_contact(db: Session, data: dict[str, Any], created_by: str) -> Contact:
    """
    Save a contact and queue it for CRM sync.

    The sync task is written in the same transaction as the contact, so a
    contact is never committed without its sync task.

    Raises:
        ContactValidationError: Invalid fields or duplicate email
    """
    contact = build_contact(data, created_by)
    if email_taken(db, contact.email):
        raise DuplicateEmailError(contact.email)

    db.add(contact)
    _flush_new_contacts(db, [contact])
    enqueue_sync(db, contact.id)

    logger.info(f"Successfully created contact {contact.id}: {contact.email}")
    return contact


def bulk_create_contacts(
    db: Session,
    items: Sequence[dict[str, Any]],
    created_by: str,
) -> tuple[list[Contact], list[dict[str, Any]]]:
    """
    Validate every item, then save the valid ones in one transaction.

    Returns:
        (saved contacts, validation errors by request index)
    """
    if len(items) > MAX_BULK_CONTACTS:
        raise ValueError(f"Maximum {MAX_BULK_CONTACTS} contacts per bulk request")

    valid: list[Contact] = []
    errors: list[dict[str, Any]] = []
    seen_emails: set[str] = set()

    for index, item in enumerate(items):
        try:
            contact = build_contact(item, created_by)
            if contact.email in seen_emails or email_taken(db, contact.email):
                raise DuplicateEmailError(contact.email)
        except ContactValidationError as e:
            errors.append({
                "index": index,
                "email": item.get("email"),
                "errors": e.full_messages,
            })
            continue

        seen_emails.add(contact.email)
        valid.append(contact)

    # Saved together in the caller's transaction
    db.add_all(valid)
    _flush_new_contacts(db, valid)
    for contact in valid:
        enqueue_sync(db, contact.id)

    logger.info(f"Bulk created {len(valid)} contacts, {len(errors)} errors")
    return valid, errors


def list_contacts(
    db: Session,
    limit: int = 50,
    offset: int = 0,
    company: Optional[str] = None,
) -> list[Contact]:
    """Newest contacts first, optionally filtered by company."""
    query = select(Contact)
    if company:
        query = query.where(Contact.company == company)
    query = query.order_by(Contact.created_at.desc(), Contact.id.desc()).limit(limit).offset(offset)
    return list(db.scalars(query).all())


def sync_contacts_from_acme(
    db: Session,
    client: AcmeCrmClient,
    filters: dict[str, Any],
    created_by: str,
) -> dict[str, Any]:
    """
    Import AcmeCRM contacts whose email is not known locally.

    CRM failures are logged and reported in the stats, never raised: this
    is a best-effort manual path.

    Returns:
        Dict with total_fetched, imported, skipped and errors
    """
    stats: dict[str, Any] = {
        "total_fetched": 0,
        "imported": 0,
        "skipped": 0,
        "errors": [],
    }

    try:
        response = client.get_contacts(filters)
    except AcmeCrmError as e:
        logger.warning(f"Failed to sync from AcmeCRM: {e}")
        stats["errors"].append(str(e))
        return stats

    if not response.get("success"):
        return stats

    records = response.get("contacts") or []
    stats["total_fetched"] = len(records)

    for record in records:
        email = record.get(AcmeField.EMAIL.value)
        if not email or email_taken(db, email):
            stats["skipped"] += 1
            continue

        contact = from_external(record, created_by=created_by)
        try:
            contact.full_clean()
        except ContactValidationError as e:
            logger.warning(f"Skipping invalid AcmeCRM contact {record.get('acme_id')}: {e}")
            stats["skipped"] += 1
            continue

        if contact.acme_id and db.scalar(select(Contact.id).where(Contact.acme_id == contact.acme_id)):
            stats["skipped"] += 1
            continue

        if contact.acme_id:
            # Already lives in the CRM
            contact.synced_at = datetime.utcnow()

        db.add(contact)
        db.flush()
        stats["imported"] += 1

    logger.info(
        f"AcmeCRM reverse sync complete: {stats['imported']} imported, {stats['skipped']} skipped"
    )
    return stats

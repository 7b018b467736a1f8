"""
Contact synchronization job.

Pushes one contact to the external CRM and records the outcome:

    pending -> skipped            contact already synced
    pending -> retry_scheduled    another attempt holds the lease; retried once it runs out
    pending -> in_flight -> synced
    in_flight -> retry_scheduled  CRM rate limit; a fresh attempt runs after a fixed delay
    in_flight -> failed           retriable (service down, unknown) or discarded (validation, gone)

The job never raises once constructed; it returns a SyncOutcome and the task
queue decides when (or whether) to run it again. Every exit that does not
store an acme_id releases the lease it claimed.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional
from uuid import uuid4

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.logging_config import get_logger_with_context
from ..core.observability import track_sync_outcome
from ..models.contact import Contact
from .acme_crm import (
    AcmeCrmClient,
    AcmeCrmError,
    RateLimitError,
    ServiceUnavailableError,
    ValidationError,
)
from .field_mapping import get_field_map, to_external


logger = logging.getLogger(__name__)

# Floor for rescheduling behind another attempt's lease
MIN_LEASE_RETRY = timedelta(seconds=5)


class SyncState(str, Enum):
    """States of a single contact sync attempt."""
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SYNCED = "synced"
    SKIPPED = "skipped"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"


class SyncError(Exception):
    """Base class for pipeline-level sync failures."""


class ContactNotFoundError(SyncError):
    """The contact disappeared between enqueue and execution."""


class SyncRejectedError(SyncError):
    """The CRM answered but reported success=false."""


@dataclass
class SyncOutcome:
    """Result of one sync attempt, consumed by the task queue."""

    contact_id: int
    state: SyncState
    acme_id: Optional[str] = None
    retriable: bool = False
    retry_after: Optional[timedelta] = None
    error: Optional[str] = None
    reason: Optional[str] = None

    @property
    def discarded(self) -> bool:
        return self.state == SyncState.FAILED and not self.retriable

    def to_dict(self) -> dict[str, Any]:
        return {
            "contact_id": self.contact_id,
            "state": self.state.value,
            "acme_id": self.acme_id,
            "retriable": self.retriable,
            "retry_after_seconds": self.retry_after.total_seconds() if self.retry_after else None,
            "error": self.error,
            "reason": self.reason,
        }


class CrmSyncJob:
    """Synchronizes a single contact to the external CRM."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        client: AcmeCrmClient,
        crm: str = "acme",
        lease_seconds: Optional[int] = None,
        rate_limit_delay: Optional[int] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """
        Initialize the sync job.

        Args:
            session_factory: Creates database sessions (e.g. SessionLocal)
            client: CRM client shared by every job run in this process
            crm: Target CRM identifier, selects the field mapping
            lease_seconds: How long a claimed contact stays reserved
            rate_limit_delay: Seconds to wait before retrying a rate-limited push
            clock: Source of "now" for leases and sync timestamps

        Raises:
            UnknownCrmError: If no field mapping is registered for crm
        """
        self.session_factory = session_factory
        self.client = client
        self.crm = crm
        get_field_map(crm)
        self.lease_duration = timedelta(
            seconds=lease_seconds if lease_seconds is not None else settings.crm_sync_lease_seconds
        )
        self.rate_limit_delay = timedelta(
            seconds=rate_limit_delay if rate_limit_delay is not None else settings.crm_sync_rate_limit_delay
        )
        self.clock = clock

    def perform(self, contact_id: int) -> SyncOutcome:
        """Sync one contact and report what happened."""
        log = get_logger_with_context(__name__, contact_id=contact_id)

        try:
            outcome = self._perform(contact_id, log)
        except Exception as e:
            # Raised before a lease was held (loading or claiming the contact)
            log.exception(f"Unexpected error preparing CRM sync for contact {contact_id}: {e}")
            outcome = self._retry(contact_id, e, "unexpected")

        track_sync_outcome(outcome.state.value)

        if outcome.state == SyncState.SYNCED:
            log.info(f"Successfully synced contact {contact_id} to CRM as {outcome.acme_id}")
        elif outcome.state == SyncState.SKIPPED:
            log.info(f"Skipped CRM sync for contact {contact_id}: {outcome.reason}")
        elif outcome.state == SyncState.RETRY_SCHEDULED:
            log.warning(
                f"Rescheduling CRM sync for contact {contact_id} ({outcome.reason}) in "
                f"{int(outcome.retry_after.total_seconds()) if outcome.retry_after else 0}s"
            )
        elif outcome.retriable:
            log.error(f"CRM sync failed for contact {contact_id} ({outcome.reason}): {outcome.error}")
        else:
            log.warning(f"Discarding CRM sync for contact {contact_id} ({outcome.reason}): {outcome.error}")

        return outcome

    def _perform(self, contact_id: int, log: logging.LoggerAdapter) -> SyncOutcome:
        with self.session_factory() as db:
            contact = db.get(Contact, contact_id)
            if contact is None:
                return self._discard(contact_id, ContactNotFoundError(f"Contact {contact_id} not found"), "not_found")

            if contact.acme_id:
                return SyncOutcome(contact_id, SyncState.SKIPPED, acme_id=contact.acme_id, reason="already_synced")

            record = to_external(contact, self.crm)
            lease = self._claim_lease(db, contact_id)
            if lease is None:
                return self._lease_unavailable(db, contact_id)

        log.info(f"Starting CRM sync for contact {contact_id}: {record.get('acme_email')}")

        try:
            outcome = self._push(contact_id, record, lease, log)
        except Exception as e:
            log.exception(f"Unexpected error syncing contact {contact_id}: {e}")
            outcome = self._retry(contact_id, e, "unexpected")

        if outcome.state != SyncState.SYNCED:
            self._release_lease(contact_id, lease, log)
        return outcome

    def _push(
        self,
        contact_id: int,
        record: dict[str, Any],
        lease: str,
        log: logging.LoggerAdapter,
    ) -> SyncOutcome:
        """Send the record and store the result. Leaves lease release to the caller."""
        try:
            response = self.client.push_contact(record)
        except RateLimitError as e:
            return SyncOutcome(
                contact_id,
                SyncState.RETRY_SCHEDULED,
                retry_after=self.rate_limit_delay,
                error=str(e),
                reason="rate_limited",
            )
        except ValidationError as e:
            return self._discard(contact_id, e, "validation")
        except ServiceUnavailableError as e:
            return self._retry(contact_id, e, "service_unavailable")
        except AcmeCrmError as e:
            return self._retry(contact_id, e, type(e).__name__)

        if not response.get("success"):
            error = SyncRejectedError(f"CRM sync failed: {response.get('error', 'unknown error')}")
            return self._discard(contact_id, error, "rejected")

        acme_id = response.get("acme_id")
        if not isinstance(acme_id, str) or not acme_id.strip():
            error = SyncError(f"CRM response did not include a valid acme_id: {acme_id!r}")
            return self._retry(contact_id, error, "unexpected")

        return self._complete(contact_id, lease, acme_id, log)

    def _claim_lease(self, db: Session, contact_id: int) -> Optional[str]:
        """Reserve the contact for this attempt; None if synced or leased elsewhere."""
        token = uuid4().hex
        now = self.clock()

        result = db.execute(
            update(Contact)
            .where(
                Contact.id == contact_id,
                Contact.acme_id.is_(None),
                or_(
                    Contact.sync_lease_token.is_(None),
                    Contact.sync_leased_at < now - self.lease_duration,
                ),
            )
            .values(sync_lease_token=token, sync_leased_at=now)
            .execution_options(synchronize_session=False)
        )
        db.commit()

        return token if result.rowcount == 1 else None

    def _lease_unavailable(self, db: Session, contact_id: int) -> SyncOutcome:
        """Explain a failed claim: synced meanwhile, gone, or leased by another attempt."""
        row = db.execute(
            select(Contact.acme_id, Contact.sync_leased_at).where(Contact.id == contact_id)
        ).first()
        if row is None:
            return self._discard(contact_id, ContactNotFoundError(f"Contact {contact_id} not found"), "not_found")
        if row.acme_id:
            return SyncOutcome(contact_id, SyncState.SKIPPED, acme_id=row.acme_id, reason="already_synced")

        # Come back once the other attempt's lease has run out
        remaining = self.lease_duration
        if row.sync_leased_at is not None:
            remaining = row.sync_leased_at + self.lease_duration - self.clock()
        return SyncOutcome(
            contact_id,
            SyncState.RETRY_SCHEDULED,
            retry_after=max(remaining, MIN_LEASE_RETRY),
            reason="sync_in_progress",
        )

    def _release_lease(self, contact_id: int, token: str, log: logging.LoggerAdapter) -> None:
        try:
            with self.session_factory() as db:
                db.execute(
                    update(Contact)
                    .where(Contact.id == contact_id, Contact.sync_lease_token == token)
                    .values(sync_lease_token=None, sync_leased_at=None)
                    .execution_options(synchronize_session=False)
                )
                db.commit()
        except SQLAlchemyError as e:
            log.error(
                f"Could not release sync lease for contact {contact_id}; it expires after "
                f"{int(self.lease_duration.total_seconds())}s: {e}"
            )

    def _complete(
        self,
        contact_id: int,
        token: str,
        acme_id: str,
        log: logging.LoggerAdapter,
    ) -> SyncOutcome:
        """Write acme_id and synced_at together, only if we still hold the lease."""
        with self.session_factory() as db:
            try:
                result = db.execute(
                    update(Contact)
                    .where(
                        Contact.id == contact_id,
                        Contact.acme_id.is_(None),
                        Contact.sync_lease_token == token,
                    )
                    .values(
                        acme_id=acme_id,
                        synced_at=self.clock(),
                        sync_lease_token=None,
                        sync_leased_at=None,
                    )
                    .execution_options(synchronize_session=False)
                )
                db.commit()
            except IntegrityError as e:
                db.rollback()
                return self._retry(contact_id, e, "integrity_error")

            if result.rowcount == 1:
                return SyncOutcome(contact_id, SyncState.SYNCED, acme_id=acme_id)
            exists = db.scalar(select(Contact.id).where(Contact.id == contact_id))

        if exists is None:
            return self._discard(contact_id, ContactNotFoundError(f"Contact {contact_id} not found"), "not_found")

        # Lease expired and another attempt finished first; this push is orphaned in the CRM
        log.error(f"Lost sync lease for contact {contact_id}; CRM record {acme_id} was not stored")
        return SyncOutcome(contact_id, SyncState.SKIPPED, acme_id=acme_id, reason="lease_lost")

    @staticmethod
    def _retry(contact_id: int, error: BaseException, reason: str) -> SyncOutcome:
        return SyncOutcome(contact_id, SyncState.FAILED, retriable=True, error=str(error), reason=reason)

    @staticmethod
    def _discard(contact_id: int, error: BaseException, reason: str) -> SyncOutcome:
        return SyncOutcome(contact_id, SyncState.FAILED, retriable=False, error=str(error), reason=reason)

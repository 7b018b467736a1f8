"""
Contacts API - capture contacts locally and queue them for CRM sync.

Routes:
- GET /api/v1/contacts - List contacts (optionally importing from AcmeCRM first)
- GET /api/v1/contacts/sync - List contacts after importing from AcmeCRM
- POST /api/v1/contacts - Create a contact and queue its CRM sync
- POST /api/v1/contacts/bulk - Create up to 100 contacts at once
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..core.database import get_session
from ..core.rate_limiting import rate_limit_bulk
from ..models.contact import Contact
from ..services.acme_crm import AcmeCrmClient
from ..services.contacts import (
    MAX_BULK_CONTACTS,
    bulk_create_contacts,
    create_contact,
    list_contacts,
    sync_contacts_from_acme,
)
from ..utils.security import created_by_from, get_current_principal
from .deps import get_crm_client
from .schemas import (
    BulkCreateBody,
    BulkCreateResponse,
    ContactResponse,
    CreateContactBody,
    CreateContactResponse,
    ErrorResponse,
    ListContactsResponse,
    ListMeta,
)

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/api/v1/contacts",
    tags=["contacts"],
    responses={401: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100


def _list_response(
    db: Session,
    client: AcmeCrmClient,
    principal: Dict[str, Any],
    limit: Optional[int],
    offset: Optional[int],
    company: Optional[str],
    sync_with_acme: bool,
) -> ListContactsResponse:
    limit = min(limit or DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE)
    offset = max(offset or 0, 0)
    company = company.strip() if company else None

    acme_stats = None
    if sync_with_acme:
        filters: Dict[str, Any] = {"limit": limit}
        if company:
            filters["company"] = company
        acme_stats = sync_contacts_from_acme(
            db,
            client,
            filters,
            created_by=str(principal.get("user_id") or "acme_sync"),
        )
        db.commit()

    contacts = list_contacts(db, limit=limit, offset=offset, company=company)

    count_query = select(func.count(Contact.id))
    if company:
        count_query = count_query.where(Contact.company == company)
    total = db.scalar(count_query) or 0

    return ListContactsResponse(
        contacts=[ContactResponse.model_validate(c) for c in contacts],
        meta=ListMeta(
            total=total,
            limit=limit,
            offset=offset,
            synced_with_acme=sync_with_acme,
            acme_sync=acme_stats,
        ),
    )


@router.get("", response_model=ListContactsResponse)
async def index(
    limit: Optional[int] = Query(default=None, ge=1),
    offset: Optional[int] = Query(default=None),
    company: Optional[str] = None,
    sync_with_acme: bool = False,
    db: Session = Depends(get_session),
    client: AcmeCrmClient = Depends(get_crm_client),
    principal: Dict[str, Any] = Depends(get_current_principal),
) -> ListContactsResponse:
    """List contacts, newest first, optionally filtered by company."""
    return _list_response(db, client, principal, limit, offset, company, sync_with_acme)


@router.get("/sync", response_model=ListContactsResponse)
async def sync(
    limit: Optional[int] = Query(default=None, ge=1),
    offset: Optional[int] = Query(default=None),
    company: Optional[str] = None,
    db: Session = Depends(get_session),
    client: AcmeCrmClient = Depends(get_crm_client),
    principal: Dict[str, Any] = Depends(get_current_principal),
) -> ListContactsResponse:
    """Import unknown contacts from AcmeCRM, then list."""
    return _list_response(db, client, principal, limit, offset, company, True)


@router.post("", response_model=CreateContactResponse, status_code=status.HTTP_201_CREATED)
async def create(
    body: CreateContactBody,
    db: Session = Depends(get_session),
    principal: Dict[str, Any] = Depends(get_current_principal),
) -> CreateContactResponse:
    """Create a contact and queue it for CRM sync.

    The sync runs in the background worker; this request never waits on
    or fails because of AcmeCRM.
    """
    contact = create_contact(db, body.contact.model_dump(), created_by_from(principal))
    db.commit()
    db.refresh(contact)

    return CreateContactResponse(
        message="Contact created and queued for CRM sync",
        contact=ContactResponse.model_validate(contact),
    )


@router.post("/bulk", response_model=BulkCreateResponse, status_code=status.HTTP_201_CREATED)
@rate_limit_bulk()
async def bulk_create(
    request: Request,
    body: BulkCreateBody,
    db: Session = Depends(get_session),
    principal: Dict[str, Any] = Depends(get_current_principal),
) -> BulkCreateResponse:
    """Create many contacts; invalid entries are reported, valid ones saved together."""
    if len(body.contacts) > MAX_BULK_CONTACTS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Maximum {MAX_BULK_CONTACTS} contacts per bulk request",
        )

    saved, errors = bulk_create_contacts(
        db,
        [item.model_dump() for item in body.contacts],
        created_by_from(principal),
    )
    db.commit()
    for contact in saved:
        db.refresh(contact)

    return BulkCreateResponse(
        message="Bulk contact creation completed",
        created=len(saved),
        errors=len(errors),
        contacts=[ContactResponse.model_validate(c) for c in saved],
        validation_errors=errors,
    )

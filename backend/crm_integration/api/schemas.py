"""Request/response models for the contacts and auth APIs."""
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..models.contact import SyncStatus


class ContactCreateRequest(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    title: Optional[str] = None
    linkedin_url: Optional[str] = None
    notes: Optional[str] = None


class CreateContactBody(BaseModel):
    contact: ContactCreateRequest


class BulkCreateBody(BaseModel):
    contacts: list[ContactCreateRequest]


class ContactResponse(BaseModel):
    """Contact as exposed over the API (no CRM id, no creator)."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    first_name: str
    last_name: str
    email: str
    phone: Optional[str]
    company: Optional[str]
    title: Optional[str]
    linkedin_url: Optional[str]
    notes: Optional[str]
    synced_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime
    full_name: str
    sync_status: SyncStatus


class CreateContactResponse(BaseModel):
    success: bool = True
    message: str
    contact: ContactResponse
    acme_sync: str = "queued"


class BulkCreateResponse(BaseModel):
    success: bool = True
    message: str
    created: int
    errors: int
    contacts: list[ContactResponse]
    validation_errors: list[dict[str, Any]]


class ListMeta(BaseModel):
    total: int
    limit: int
    offset: int
    synced_with_acme: bool
    acme_sync: Optional[dict[str, Any]] = None


class ListContactsResponse(BaseModel):
    success: bool = True
    contacts: list[ContactResponse]
    meta: ListMeta


class LoginRequest(BaseModel):
    email: Optional[str] = None
    user_id: Optional[str] = None
    name: Optional[str] = None
    company: Optional[str] = None


class UserInfo(BaseModel):
    id: str
    email: str
    name: str
    company: str


class LoginResponse(BaseModel):
    success: bool = True
    message: str = "Authentication successful"
    token: str
    expires_at: datetime
    user: UserInfo


class ValidateResponse(BaseModel):
    success: bool = True
    valid: bool = True
    user: UserInfo
    expires_at: datetime


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    status: int = Field(..., description="HTTP status code")

"""Shared FastAPI dependencies."""
from fastapi import Request

from ..services.acme_crm import AcmeCrmClient


def get_crm_client(request: Request) -> AcmeCrmClient:
    """CRM client built once at startup and stored on the application state."""
    return request.app.state.crm_client

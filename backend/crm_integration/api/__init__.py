"""API routers aggregation."""
from fastapi import APIRouter

from . import auth, contacts, health

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(auth.router)
api_router.include_router(contacts.router)

__all__ = ["api_router"]

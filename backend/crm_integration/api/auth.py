"""Demo token issuing and validation.

Any well-formed email gets a token; there is no user store behind this.
"""
import logging
from datetime import datetime
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..core.rate_limiting import rate_limit_auth
from ..models.contact import EMAIL_PATTERN
from ..utils.security import create_access_token, get_current_principal
from .schemas import LoginRequest, LoginResponse, UserInfo, ValidateResponse

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


@router.post("/login", response_model=LoginResponse)
@rate_limit_auth()
async def login(request: Request, body: LoginRequest) -> LoginResponse:
    """Issue a JWT for API access."""
    if not body.email:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email is required")
    if not EMAIL_PATTERN.match(body.email):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid email format")

    token, claims = create_access_token(
        email=body.email,
        user_id=body.user_id,
        name=body.name,
        company=body.company,
    )
    logger.info(f"Generated JWT token for user: {body.email}")

    return LoginResponse(
        token=token,
        expires_at=claims["exp"],
        user=UserInfo(
            id=claims["user_id"],
            email=claims["email"],
            name=claims["name"],
            company=claims["company"],
        ),
    )


@router.post("/validate", response_model=ValidateResponse)
async def validate(principal: Dict[str, Any] = Depends(get_current_principal)) -> ValidateResponse:
    """Check the bearer token and echo who it belongs to."""
    return ValidateResponse(
        user=UserInfo(
            id=str(principal.get("user_id")),
            email=principal.get("email", ""),
            name=principal.get("name", ""),
            company=principal.get("company", ""),
        ),
        expires_at=datetime.utcfromtimestamp(principal["exp"]),
    )
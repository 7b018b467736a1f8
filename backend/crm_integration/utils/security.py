"""Security related helpers."""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from uuid import uuid4
import logging

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..core.config import settings

logger = logging.getLogger(__name__)


ALGORITHM = "HS256"

security = HTTPBearer(auto_error=False)


def create_access_token(
    email: str,
    user_id: Optional[str] = None,
    name: Optional[str] = None,
    company: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> tuple[str, Dict[str, Any]]:
    """Create a demo API token.

    Args:
        email: Email of the caller
        user_id: Optional user ID (a random UUID when omitted)
        name: Display name
        company: Company name
        expires_delta: Optional expiration time delta (default: JWT_EXPIRATION_HOURS)

    Returns:
        Encoded JWT token and the claims it carries
    """
    if expires_delta is None:
        expires_delta = timedelta(hours=settings.jwt_expiration_hours)

    issued_at = datetime.utcnow()
    expire = issued_at + expires_delta

    payload = {
        "user_id": user_id or str(uuid4()),
        "email": email,
        "name": name or "Demo User",
        "company": company or "Demo Company",
        "aud": settings.jwt_audience,
        "iat": issued_at,
        "exp": expire,
    }

    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM), payload


def decode_access_token(token: str) -> Dict[str, Any]:
    """Verify and decode an API token.

    Raises:
        HTTPException: If token is invalid or expired
    """
    try:
        return jwt.decode(
            token,
            settings.secret_key,
            algorithms=[ALGORITHM],
            audience=settings.jwt_audience,
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
        )
    except jwt.InvalidTokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {e}",
        )


async def get_current_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Dict[str, Any]:
    """Get the token payload of the authenticated caller.

    Raises:
        HTTPException: If the Authorization header is missing or the token is invalid
    """
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization token",
        )

    principal = decode_access_token(credentials.credentials)
    request.state.principal = principal
    return principal


def created_by_from(principal: Dict[str, Any]) -> str:
    """Identifier recorded as the creator of contacts."""
    return str(principal.get("user_id") or principal.get("email") or "unknown")

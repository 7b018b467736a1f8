"""
Security middleware and utilities.

Implements:
- Security headers (X-Frame-Options, etc.)
- PII redaction from logs
"""

import re
from typing import Any, Dict, Optional
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp
import logging

logger = logging.getLogger(__name__)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add security headers to all responses.

    This is a JSON API, so the policy denies framing and any resource loading.
    """

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        response = await call_next(request)

        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        return response


class PIIRedactor:
    """
    Redact Personally Identifiable Information (PII) from logs and data.

    Contact records carry emails, phone numbers and bearer tokens travel with
    CRM requests; those are masked before reaching log output.
    """

    EMAIL_PATTERN = re.compile(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b')
    PHONE_PATTERN = re.compile(r'\+?\d{1,3}?[-.\s]?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b')
    TOKEN_PATTERN = re.compile(r'(token|key|secret|password|bearer)[\s:=]+["\']?([^"\'\s]+)["\']?', re.IGNORECASE)

    @classmethod
    def redact_email(cls, text: str) -> str:
        """Redact email addresses, keeping the domain for debugging."""
        return cls.EMAIL_PATTERN.sub(
            lambda match: '[EMAIL_REDACTED]@' + match.group(0).split('@', 1)[1],
            text,
        )

    @classmethod
    def redact_phone(cls, text: str) -> str:
        return cls.PHONE_PATTERN.sub('[PHONE_REDACTED]', text)

    @classmethod
    def redact_tokens(cls, text: str) -> str:
        return cls.TOKEN_PATTERN.sub(r'\1=[REDACTED]', text)

    @classmethod
    def redact_all(cls, text: str) -> str:
        """Apply all redaction rules."""
        text = cls.redact_email(text)
        text = cls.redact_phone(text)
        text = cls.redact_tokens(text)
        return text

    @classmethod
    def redact_dict(cls, data: Dict[str, Any], keys_to_redact: Optional[list[str]] = None) -> Dict[str, Any]:
        """
        Redact sensitive keys from dictionary.

        Args:
            data: Dictionary to redact
            keys_to_redact: List of keys to redact (default: common sensitive keys)

        Returns:
            Dictionary with redacted values
        """
        if keys_to_redact is None:
            keys_to_redact = [
                'password', 'token', 'secret', 'api_key', 'authorization',
                'acme_email', 'acme_phone', 'email', 'phone',
            ]

        redacted = data.copy()
        for key in keys_to_redact:
            if key in redacted:
                redacted[key] = '[REDACTED]'

        return redacted


class PIIRedactionFilter(logging.Filter):
    """Logging filter that masks PII in messages and string arguments."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = PIIRedactor.redact_all(record.msg)

        if record.args and isinstance(record.args, tuple):
            record.args = tuple(
                PIIRedactor.redact_all(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )

        return True


def setup_security_logging() -> None:
    """
    Configure logging to automatically redact PII.

    The filter is attached to the root logger's handlers so that records
    propagated from module loggers are redacted as well.
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        if not any(isinstance(f, PIIRedactionFilter) for f in handler.filters):
            handler.addFilter(PIIRedactionFilter())
    logger.info("PII redaction filter installed on root handlers")

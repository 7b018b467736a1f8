"""
FastAPI application entry point for the Linq CRM Integration API.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional
import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from crm_integration.api import api_router
from crm_integration.core.config import settings
from crm_integration.core.database import engine, create_db_and_tables
from crm_integration.core.logging_config import CorrelationIdMiddleware, setup_structured_logging
from crm_integration.core.observability import setup_metrics
from crm_integration.core.rate_limiting import setup_rate_limiting
from crm_integration.core.security import SecurityHeadersMiddleware, setup_security_logging
from crm_integration.models.contact import ContactValidationError
from crm_integration.services.acme_crm import (
    AcmeCrmClient,
    AcmeCrmError,
    AuthenticationError,
    RateLimitError,
    ServiceUnavailableError,
)

# Configure structured logging
setup_structured_logging(log_level=settings.log_level)
logger = logging.getLogger(__name__)


def _error(message: str, status_code: int, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": message, "status": status_code, **extra},
    )


async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error(str(exc.detail), exc.status_code)


async def handle_validation_error(request: Request, exc: ContactValidationError) -> JSONResponse:
    return _error(
        "Validation failed",
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        details=exc.full_messages,
        field_errors=exc.errors,
    )


async def handle_acme_crm_error(request: Request, exc: AcmeCrmError) -> JSONResponse:
    logger.warning(f"AcmeCRM error while handling {request.url.path}: {exc}")
    if isinstance(exc, AuthenticationError):
        return _error("CRM authentication failed", status.HTTP_401_UNAUTHORIZED)
    if isinstance(exc, RateLimitError):
        return _error("Rate limit exceeded. Please try again later.", status.HTTP_429_TOO_MANY_REQUESTS)
    if isinstance(exc, ServiceUnavailableError):
        return _error("CRM service temporarily unavailable", status.HTTP_503_SERVICE_UNAVAILABLE)
    return _error("CRM integration error", status.HTTP_502_BAD_GATEWAY)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    if settings.secret_key == "dev-secret-key-change-in-production-min-32-characters":
        if settings.app_env == "production":
            logger.error("CRITICAL: Default SECRET_KEY detected in production!")
            raise ValueError("Must set custom SECRET_KEY in production")
        logger.warning("WARNING: Using default SECRET_KEY - DO NOT use in production!")

    create_db_and_tables()
    setup_security_logging()

    owns_client = getattr(app.state, "crm_client", None) is None
    if owns_client:
        app.state.crm_client = AcmeCrmClient()
    logger.info(
        f"Application startup complete (AcmeCRM {'demo' if app.state.crm_client.demo_mode else 'live'} mode)"
    )

    yield

    if owns_client:
        app.state.crm_client.close()
    engine.dispose()
    logger.info("Application shutdown complete")


def create_app(crm_client: Optional[AcmeCrmClient] = None) -> FastAPI:
    """Build the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        description="API for integrating Linq with AcmeCRM",
        version="1.0.0",
        lifespan=lifespan,
    )
    if crm_client is not None:
        app.state.crm_client = crm_client

    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(CorrelationIdMiddleware)

    if settings.app_env == "development":
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"],
            allow_headers=["*"],
        )
    else:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"],
            allow_headers=["Content-Type", "Authorization", "X-Correlation-ID"],
            expose_headers=["X-Correlation-ID"],
            max_age=600,
        )

    setup_rate_limiting(app)
    setup_metrics(app)

    app.add_exception_handler(StarletteHTTPException, handle_http_exception)
    app.add_exception_handler(ContactValidationError, handle_validation_error)
    app.add_exception_handler(AcmeCrmError, handle_acme_crm_error)

    app.include_router(api_router)

    @app.get("/")
    async def root() -> dict:
        """
        Root endpoint with API information.
        """
        return {
            "service": "Linq CRM Integration API",
            "version": "1.0.0",
            "description": "API for integrating Linq with AcmeCRM",
            "endpoints": {
                "health": "/up",
                "auth": {
                    "login": "POST /api/v1/auth/login",
                    "validate": "POST /api/v1/auth/validate",
                },
                "contacts": {
                    "list": "GET /api/v1/contacts",
                    "create": "POST /api/v1/contacts",
                    "bulk_create": "POST /api/v1/contacts/bulk",
                    "sync": "GET /api/v1/contacts/sync",
                },
                "metrics": "/metrics",
            },
        }

    return app


app = create_app()

"""Database engine and helper utilities."""
import logging
from collections.abc import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from crm_integration.models.base import Base
from .config import settings


logger = logging.getLogger(__name__)


def _build_engine_url() -> str:
    if not settings.database_url:
        raise ValueError("DATABASE_URL is not configured")
    return settings.database_url


def _create_engine() -> Engine:
    url = _build_engine_url()
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(
        url,
        echo=settings.debug_sql,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


engine = _create_engine()


def create_db_and_tables(bind: Engine | None = None) -> None:
    """Create database tables for all registered models."""
    # Import models so they register on Base.metadata
    from crm_integration import models  # noqa: F401

    Base.metadata.create_all(bind or engine)
    logger.info("Database tables ensured")


# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_session() -> Iterator[Session]:
    """Provide a managed SQLAlchemy session for FastAPI dependency injection."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

import os
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

# Must be set before the application settings are first imported
os.environ["APP_ENV"] = "test"
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key-that-is-at-least-32-characters-long")

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from crm_integration.core.rate_limiting import SlidingWindowRateLimiter
from crm_integration.models import Base, Contact
from crm_integration.services.acme_crm import AcmeCrmClient


class FakeClock:
    """Controllable replacement for datetime.utcnow."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 15, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeMonotonic:
    """Controllable replacement for time.monotonic."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def demo_client():
    client = AcmeCrmClient(demo_mode=True)
    yield client
    client.close()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def live_client(sleeps):
    """Factory for live-mode clients backed by an httpx.MockTransport handler."""
    created = []

    def factory(
        handler: Callable[[httpx.Request], httpx.Response],
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
    ) -> AcmeCrmClient:
        http_client = httpx.Client(
            base_url="https://acme.test/v1",
            transport=httpx.MockTransport(handler),
        )
        client = AcmeCrmClient(
            demo_mode=False,
            http_client=http_client,
            rate_limiter=rate_limiter,
            sleep=sleeps.append,
        )
        created.append(client)
        return client

    yield factory

    for client in created:
        client.close()


@pytest.fixture
def make_contact(db):
    def factory(**overrides: Any) -> Contact:
        values = {
            "first_name": "Jane",
            "last_name": "Doe",
            "email": "jane.doe@example.com",
            "company": "Acme Widgets",
            "title": "Engineer",
            "created_by": "user-1",
        }
        values.update(overrides)
        contact = Contact(**values)
        db.add(contact)
        db.commit()
        return contact

    return factory

import re
from datetime import timedelta

import httpx
import pytest
from prometheus_client import REGISTRY
from sqlalchemy.exc import OperationalError

from crm_integration.core.rate_limiting import SlidingWindowRateLimiter
from crm_integration.models import Contact
from crm_integration.services.crm_sync import CrmSyncJob, SyncState
from crm_integration.services.field_mapping import UnknownCrmError


def success_handler(pushes):
    def handler(request):
        pushes.append(request)
        return httpx.Response(201, json={"success": True, "acme_id": f"acme_{len(pushes):016x}"})

    return handler


@pytest.fixture
def make_job(session_factory, clock):
    def factory(client, **kwargs):
        return CrmSyncJob(session_factory, client, clock=clock, **kwargs)

    return factory


def test_sync_writes_acme_id_and_timestamp(make_job, make_contact, demo_client, db, clock):
    contact = make_contact()

    outcome = make_job(demo_client).perform(contact.id)

    assert outcome.state == SyncState.SYNCED
    assert re.fullmatch(r"acme_[0-9a-f]{16}", outcome.acme_id)
    db.refresh(contact)
    assert contact.acme_id == outcome.acme_id
    assert contact.synced_at == clock.now
    assert contact.sync_lease_token is None
    assert contact.sync_status.value == "synced"


def test_already_synced_contact_is_skipped_without_push(make_job, make_contact, live_client, db):
    pushes = []
    job = make_job(live_client(success_handler(pushes)))
    contact = make_contact()

    first = job.perform(contact.id)
    second = job.perform(contact.id)

    assert first.state == SyncState.SYNCED
    assert second.state == SyncState.SKIPPED
    assert second.reason == "already_synced"
    assert second.acme_id == first.acme_id
    assert len(pushes) == 1


def test_missing_contact_is_discarded(make_job, demo_client):
    outcome = make_job(demo_client).perform(4242)

    assert outcome.state == SyncState.FAILED
    assert outcome.discarded
    assert outcome.reason == "not_found"


def test_rate_limited_push_is_rescheduled(make_job, make_contact, live_client, monotonic, db):
    limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=60, clock=monotonic)
    limiter.try_acquire()
    pushes = []
    job = make_job(live_client(success_handler(pushes), rate_limiter=limiter))
    contact = make_contact()

    outcome = job.perform(contact.id)

    assert outcome.state == SyncState.RETRY_SCHEDULED
    assert outcome.retry_after == timedelta(seconds=300)
    assert outcome.reason == "rate_limited"
    assert pushes == []
    db.refresh(contact)
    assert contact.acme_id is None
    assert contact.sync_lease_token is None


def test_crm_validation_error_is_discarded(make_job, make_contact, live_client, db):
    job = make_job(live_client(lambda request: httpx.Response(400, json={"error": "bad email"})))
    contact = make_contact()

    outcome = job.perform(contact.id)

    assert outcome.state == SyncState.FAILED
    assert outcome.discarded
    assert outcome.reason == "validation"
    db.refresh(contact)
    assert contact.acme_id is None
    assert contact.sync_lease_token is None


def test_unavailable_service_is_retriable(make_job, make_contact, live_client):
    job = make_job(live_client(lambda request: httpx.Response(503)))
    contact = make_contact()

    outcome = job.perform(contact.id)

    assert outcome.state == SyncState.FAILED
    assert outcome.retriable
    assert outcome.reason == "service_unavailable"


@pytest.mark.parametrize(
    "status_code, reason",
    [(401, "AuthenticationError"), (418, "UnknownResponseError")],
)
def test_other_crm_errors_are_retriable(make_job, make_contact, live_client, status_code, reason):
    job = make_job(live_client(lambda request: httpx.Response(status_code)))
    contact = make_contact()

    outcome = job.perform(contact.id)

    assert outcome.retriable
    assert outcome.reason == reason


def test_rejected_envelope_is_discarded(make_job, make_contact, live_client):
    job = make_job(live_client(lambda request: httpx.Response(200, json={"success": False, "error": "duplicate"})))
    contact = make_contact()

    outcome = job.perform(contact.id)

    assert outcome.discarded
    assert outcome.reason == "rejected"
    assert "duplicate" in outcome.error


def test_unexpected_exception_is_retriable(make_job, make_contact, demo_client, monkeypatch):
    def explode(record):
        raise RuntimeError("boom")

    monkeypatch.setattr(demo_client, "push_contact", explode)
    contact = make_contact()

    outcome = make_job(demo_client).perform(contact.id)

    assert outcome.retriable
    assert outcome.reason == "unexpected"
    assert outcome.error == "boom"


@pytest.mark.parametrize("acme_id", [["acme_x"], "", "   ", None, 42])
def test_malformed_acme_id_releases_lease(make_job, make_contact, live_client, db, acme_id):
    job = make_job(live_client(lambda request: httpx.Response(201, json={"success": True, "acme_id": acme_id})))
    contact = make_contact()

    outcome = job.perform(contact.id)

    assert outcome.state == SyncState.FAILED
    assert outcome.retriable
    assert outcome.reason == "unexpected"
    db.refresh(contact)
    assert contact.acme_id is None
    assert contact.sync_lease_token is None
    assert contact.sync_leased_at is None


def test_database_error_after_push_releases_lease(make_job, make_contact, demo_client, db, monkeypatch):
    job = make_job(demo_client)

    def locked(*args):
        raise OperationalError("UPDATE contacts", {}, Exception("database is locked"))

    monkeypatch.setattr(job, "_complete", locked)
    contact = make_contact()

    outcome = job.perform(contact.id)

    assert outcome.retriable
    assert outcome.reason == "unexpected"
    db.refresh(contact)
    assert contact.sync_lease_token is None


def test_database_error_before_lease_is_retriable(make_job, make_contact, demo_client, monkeypatch):
    job = make_job(demo_client)

    def locked(*args):
        raise OperationalError("UPDATE contacts", {}, Exception("database is locked"))

    monkeypatch.setattr(job, "_claim_lease", locked)
    contact = make_contact()

    outcome = job.perform(contact.id)

    assert outcome.state == SyncState.FAILED
    assert outcome.retriable
    assert outcome.reason == "unexpected"


def test_unknown_crm_fails_at_construction(session_factory, demo_client):
    with pytest.raises(UnknownCrmError):
        CrmSyncJob(session_factory, demo_client, crm="salesforce")


def test_concurrent_delivery_pushes_once(make_job, make_contact, live_client, demo_client):
    contact = make_contact()
    racing = make_job(demo_client)
    pushes = []
    inner_outcomes = []

    def handler(request):
        # A duplicate delivery of the same task arrives mid-push
        inner_outcomes.append(racing.perform(contact.id))
        pushes.append(request)
        return httpx.Response(201, json={"success": True, "acme_id": "acme_00000000000000aa"})

    outcome = make_job(live_client(handler)).perform(contact.id)

    assert outcome.state == SyncState.SYNCED
    assert len(pushes) == 1
    assert inner_outcomes[0].state == SyncState.RETRY_SCHEDULED
    assert inner_outcomes[0].reason == "sync_in_progress"


def test_expired_lease_can_be_reclaimed(make_job, make_contact, demo_client, clock, db):
    contact = make_contact()
    contact.sync_lease_token = "crashed-worker"
    contact.sync_leased_at = clock.now - timedelta(seconds=301)
    db.commit()

    outcome = make_job(demo_client).perform(contact.id)

    assert outcome.state == SyncState.SYNCED


def test_live_lease_reschedules_until_it_runs_out(make_job, make_contact, demo_client, clock, db):
    contact = make_contact()
    contact.sync_lease_token = "other-worker"
    contact.sync_leased_at = clock.now - timedelta(seconds=10)
    db.commit()

    outcome = make_job(demo_client).perform(contact.id)

    assert outcome.state == SyncState.RETRY_SCHEDULED
    assert outcome.reason == "sync_in_progress"
    assert outcome.retry_after == timedelta(seconds=290)
    db.refresh(contact)
    assert contact.sync_lease_token == "other-worker"


def test_lost_lease_does_not_overwrite(make_job, make_contact, live_client, session_factory, db):
    contact = make_contact()

    def handler(request):
        with session_factory() as other:
            stolen = other.get(Contact, contact.id)
            stolen.sync_lease_token = "someone-else"
            other.commit()
        return httpx.Response(201, json={"success": True, "acme_id": "acme_00000000000000bb"})

    outcome = make_job(live_client(handler)).perform(contact.id)

    assert outcome.state == SyncState.SKIPPED
    assert outcome.reason == "lease_lost"
    db.refresh(contact)
    assert contact.acme_id is None


def test_outcomes_are_counted(make_job, make_contact, demo_client):
    before = REGISTRY.get_sample_value("crm_sync_outcomes_total", {"state": "synced"}) or 0.0
    contact = make_contact()

    make_job(demo_client).perform(contact.id)

    assert REGISTRY.get_sample_value("crm_sync_outcomes_total", {"state": "synced"}) == before + 1


def test_outcome_serializes_retry_delay(make_job, make_contact, live_client, monotonic):
    limiter = SlidingWindowRateLimiter(max_requests=0, window_seconds=60, clock=monotonic)
    job = make_job(live_client(success_handler([]), rate_limiter=limiter), rate_limit_delay=120)

    outcome = job.perform(make_contact().id)

    assert outcome.to_dict()["retry_after_seconds"] == 120.0
    assert outcome.to_dict()["state"] == "retry_scheduled"

from datetime import timedelta

import httpx
import pytest
from sqlalchemy import select

from crm_integration.core.rate_limiting import SlidingWindowRateLimiter
from crm_integration.models import Task, TaskState
from crm_integration.services.crm_sync import CrmSyncJob
from crm_integration.services.task_queue import CRM_SYNC_TASK, enqueue_sync, enqueue_task
from crm_integration.services.tasks_worker import TaskWorker


@pytest.fixture
def make_worker(session_factory, clock):
    def factory(client):
        job = CrmSyncJob(session_factory, client, clock=clock)
        return TaskWorker(session_factory, job, poll_interval=0, clock=clock)

    return factory


def queue_sync(db, contact_id, **kwargs):
    task = enqueue_sync(db, contact_id, **kwargs)
    db.commit()
    return task


def load_tasks(db):
    db.expire_all()
    return list(db.scalars(select(Task).order_by(Task.id)).all())


def test_enqueue_sync_creates_pending_task(db, clock):
    task = queue_sync(db, 7, delay=timedelta(seconds=30), now=clock.now)

    assert task.task_type == CRM_SYNC_TASK
    assert task.queue == "crm_sync"
    assert task.state == TaskState.PENDING.value
    assert task.payload == {"contact_id": 7}
    assert task.max_attempts == 3
    assert task.attempts == 0
    assert task.scheduled_for == clock.now + timedelta(seconds=30)


def test_successful_sync_completes_task(make_worker, make_contact, demo_client, db):
    contact = make_contact()
    queue_sync(db, contact.id)
    worker = make_worker(demo_client)

    assert worker.run_pending() == 1

    [task] = load_tasks(db)
    assert task.state == TaskState.COMPLETED.value
    assert task.attempts == 1
    assert task.result["state"] == "synced"
    db.refresh(contact)
    assert contact.acme_id == task.result["acme_id"]


def test_duplicate_tasks_push_once(make_worker, make_contact, live_client, db):
    pushes = []

    def handler(request):
        pushes.append(request)
        return httpx.Response(201, json={"success": True, "acme_id": "acme_00000000000000cc"})

    contact = make_contact()
    queue_sync(db, contact.id)
    queue_sync(db, contact.id)

    make_worker(live_client(handler)).run_pending()

    first, second = load_tasks(db)
    assert len(pushes) == 1
    assert first.result["state"] == "synced"
    assert second.result["state"] == "skipped"
    assert second.state == TaskState.COMPLETED.value


def test_unavailable_crm_retries_with_backoff_then_fails(make_worker, make_contact, live_client, db, clock):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    contact = make_contact()
    queue_sync(db, contact.id)
    worker = make_worker(live_client(handler))
    delays = []

    for _ in range(3):
        assert worker.process_next_task() is True
        [task] = load_tasks(db)
        if task.state == TaskState.PENDING.value:
            delays.append((task.scheduled_for - clock.now).total_seconds())
            # Not eligible until the backoff elapses
            assert worker.process_next_task() is False
            clock.advance(delays[-1])

    [task] = load_tasks(db)
    assert delays == [120.0, 240.0]
    assert task.state == TaskState.FAILED.value
    assert task.attempts == 3
    assert "service error" in task.last_error
    assert task.result["reason"] == "service_unavailable"
    # Four HTTP calls per attempt: the first try plus three transport retries
    assert len(calls) == 12
    assert worker.process_next_task() is False
    db.refresh(contact)
    assert contact.acme_id is None


def test_rate_limited_sync_enqueues_fresh_task(make_worker, make_contact, live_client, monotonic, db, clock):
    limiter = SlidingWindowRateLimiter(max_requests=0, window_seconds=60, clock=monotonic)
    client = live_client(lambda request: httpx.Response(201, json={"success": True, "acme_id": "acme_x"}), rate_limiter=limiter)
    contact = make_contact()
    queue_sync(db, contact.id)

    make_worker(client).run_pending()

    original, retry = load_tasks(db)
    assert original.state == TaskState.COMPLETED.value
    assert original.result["state"] == "retry_scheduled"
    assert retry.state == TaskState.PENDING.value
    assert retry.attempts == 0
    assert retry.payload == {"contact_id": contact.id}
    assert retry.scheduled_for == clock.now + timedelta(seconds=300)


def test_malformed_response_is_retried_and_syncs(make_worker, make_contact, live_client, db, clock):
    pushes = []

    def handler(request):
        pushes.append(request)
        acme_id = ["acme_x"] if len(pushes) == 1 else "acme_00000000000000dd"
        return httpx.Response(201, json={"success": True, "acme_id": acme_id})

    contact = make_contact()
    queue_sync(db, contact.id)
    worker = make_worker(live_client(handler))

    assert worker.process_next_task() is True
    [task] = load_tasks(db)
    assert task.state == TaskState.PENDING.value
    assert task.scheduled_for == clock.now + timedelta(seconds=120)
    db.refresh(contact)
    assert contact.sync_lease_token is None

    clock.advance(120)
    assert worker.run_pending() == 1

    [task] = load_tasks(db)
    assert task.state == TaskState.COMPLETED.value
    assert task.result["state"] == "synced"
    assert len(pushes) == 2
    db.refresh(contact)
    assert contact.acme_id == "acme_00000000000000dd"


def test_leased_contact_is_rescheduled_after_lease(make_worker, make_contact, demo_client, db, clock):
    contact = make_contact()
    contact.sync_lease_token = "other-worker"
    contact.sync_leased_at = clock.now - timedelta(seconds=10)
    db.commit()
    queue_sync(db, contact.id)

    make_worker(demo_client).run_pending()

    original, retry = load_tasks(db)
    assert original.state == TaskState.COMPLETED.value
    assert original.result["state"] == "retry_scheduled"
    assert original.result["reason"] == "sync_in_progress"
    assert retry.state == TaskState.PENDING.value
    assert retry.scheduled_for == clock.now + timedelta(seconds=290)

    # The holder never finishes; the fresh task takes over once the lease runs out
    clock.advance(300)
    make_worker(demo_client).run_pending()

    db.refresh(contact)
    assert contact.acme_id is not None


def test_validation_failure_discards_task(make_worker, make_contact, live_client, db):
    contact = make_contact()
    queue_sync(db, contact.id)

    make_worker(live_client(lambda request: httpx.Response(400))).run_pending()

    [task] = load_tasks(db)
    assert task.state == TaskState.DISCARDED.value
    assert task.attempts == 1
    assert task.result["reason"] == "validation"


def test_missing_contact_discards_task(make_worker, demo_client, db):
    queue_sync(db, 999)

    make_worker(demo_client).run_pending()

    [task] = load_tasks(db)
    assert task.state == TaskState.DISCARDED.value
    assert task.result["reason"] == "not_found"


def test_unknown_task_type_uses_retry_budget(make_worker, demo_client, db, clock):
    enqueue_task(db, "send_newsletter", {}, max_attempts=1)
    db.commit()

    make_worker(demo_client).run_pending()

    [task] = load_tasks(db)
    assert task.state == TaskState.FAILED.value
    assert "Unknown task type" in task.last_error


def test_higher_priority_runs_first(make_worker, make_contact, demo_client, db):
    low = make_contact(email="low@example.com")
    high = make_contact(email="high@example.com")
    enqueue_task(db, CRM_SYNC_TASK, {"contact_id": low.id}, priority=0)
    enqueue_task(db, CRM_SYNC_TASK, {"contact_id": high.id}, priority=5)
    db.commit()

    make_worker(demo_client).run_pending(limit=1)

    db.refresh(low)
    db.refresh(high)
    assert high.acme_id is not None
    assert low.acme_id is None


def test_orphaned_tasks_are_reclaimed(make_worker, demo_client, db, clock):
    stale = queue_sync(db, 1)
    fresh = queue_sync(db, 2)
    stale.state = TaskState.IN_PROGRESS.value
    stale.locked_at = clock.now - timedelta(seconds=301)
    fresh.state = TaskState.IN_PROGRESS.value
    fresh.locked_at = clock.now - timedelta(seconds=10)
    db.commit()

    assert make_worker(demo_client).reclaim_orphaned_tasks() == 1

    stale_task, fresh_task = load_tasks(db)
    assert stale_task.state == TaskState.PENDING.value
    assert stale_task.locked_at is None
    assert fresh_task.state == TaskState.IN_PROGRESS.value

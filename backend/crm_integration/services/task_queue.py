"""Enqueueing helpers for the database-backed task queue."""
import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.observability import track_task
from ..models.task import Task, TaskState

logger = logging.getLogger(__name__)

CRM_SYNC_TASK = "crm_sync"
CRM_SYNC_QUEUE = "crm_sync"


def enqueue_task(
    db: Session,
    task_type: str,
    payload: dict[str, Any],
    delay: Optional[timedelta] = None,
    max_attempts: int = 3,
    queue: str = "default",
    priority: int = 0,
    now: Optional[datetime] = None,
) -> Task:
    """
    Add a task to the queue.

    The task joins the caller's transaction: it becomes visible to workers
    only once the caller commits.

    Args:
        db: Database session
        task_type: Handler key the worker dispatches on
        payload: JSON-serializable arguments
        delay: Optional delay before the task becomes eligible
        max_attempts: Attempts allowed before the task fails permanently
        queue: Logical queue name
        priority: Higher runs first
        now: Reference time (defaults to utcnow)

    Returns:
        The pending Task (flushed, so it has an id)
    """
    now = now or datetime.utcnow()
    task = Task(
        task_type=task_type,
        queue=queue,
        state=TaskState.PENDING.value,
        priority=priority,
        attempts=0,
        max_attempts=max_attempts,
        payload=payload,
        scheduled_for=now + delay if delay else None,
    )
    db.add(task)
    db.flush()

    track_task(task_type, TaskState.PENDING.value)
    logger.info(
        f"Enqueued task {task.id} (type: {task_type}, queue: {queue}"
        + (f", delay: {int(delay.total_seconds())}s)" if delay else ")")
    )
    return task


def enqueue_sync(
    db: Session,
    contact_id: int,
    delay: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> Task:
    """Queue a CRM sync for a contact. Fire and forget; running it twice is harmless."""
    return enqueue_task(
        db,
        CRM_SYNC_TASK,
        {"contact_id": contact_id},
        delay=delay,
        max_attempts=settings.crm_sync_max_attempts,
        queue=CRM_SYNC_QUEUE,
        now=now,
    )

"""
Background task worker for processing asynchronous jobs.

This worker:
- Polls the Task table for pending tasks
- Acquires DB row-level locks to prevent duplicate processing
- Runs CRM sync jobs and applies the outcome they return
- Implements retry logic with exponential backoff
- Handles graceful shutdown
- Reclaims orphaned tasks on startup
"""

import asyncio
import logging
import signal
import sys
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.logging_config import get_logger_with_context
from ..core.observability import track_task
from ..models.task import Task, TaskState
from .crm_sync import CrmSyncJob, SyncOutcome, SyncState
from .task_queue import CRM_SYNC_TASK, enqueue_sync


logger = logging.getLogger(__name__)


class TaskWorker:
    """
    Background worker that processes tasks from the database.

    Features:
    - Polling with configurable interval
    - DB row-level locking for concurrency safety
    - Exponential backoff retry logic
    - Graceful shutdown handling
    - Orphaned task recovery
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        sync_job: CrmSyncJob,
        poll_interval: int = 5,
        max_concurrent_tasks: int = 10,
        lock_timeout: int = 300,  # 5 minutes
        retry_base_delay: Optional[int] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """
        Initialize the task worker.

        Args:
            session_factory: Creates database sessions
            sync_job: Job that handles crm_sync tasks
            poll_interval: Seconds between polling cycles
            max_concurrent_tasks: Maximum tasks to process concurrently
            lock_timeout: Seconds before considering a locked task orphaned
            retry_base_delay: Seconds multiplied by 2**attempts between retries
            clock: Source of "now" for scheduling
        """
        self.session_factory = session_factory
        self.sync_job = sync_job
        self.poll_interval = poll_interval
        self.max_concurrent_tasks = max_concurrent_tasks
        self.lock_timeout = lock_timeout
        self.retry_base_delay = (
            retry_base_delay if retry_base_delay is not None else settings.crm_sync_retry_base_delay
        )
        self.clock = clock
        self.running = False

    def start(self) -> None:
        """Start the worker (blocking call)."""
        self.running = True
        logger.info("Task worker starting...")

        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        self.reclaim_orphaned_tasks()

        asyncio.run(self._poll_loop())

    def stop(self) -> None:
        """Stop the worker gracefully."""
        logger.info("Task worker stopping...")
        self.running = False

    def _signal_handler(self, signum: int, frame: Any) -> None:
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        self.stop()

    def reclaim_orphaned_tasks(self) -> int:
        """
        Reclaim tasks that were locked but never completed.
        This handles cases where the worker crashed mid-execution.
        """
        try:
            with self.session_factory() as db:
                timeout_threshold = self.clock() - timedelta(seconds=self.lock_timeout)

                orphaned_tasks = db.scalars(
                    select(Task).where(
                        Task.state == TaskState.IN_PROGRESS.value,
                        Task.locked_at.is_not(None),
                        Task.locked_at < timeout_threshold,
                    )
                ).all()

                if orphaned_tasks:
                    logger.info(f"Reclaiming {len(orphaned_tasks)} orphaned tasks")

                    for task in orphaned_tasks:
                        task.state = TaskState.PENDING.value
                        task.locked_at = None
                        task.touch()

                    db.commit()

                return len(orphaned_tasks)

        except Exception as e:
            logger.error(f"Error reclaiming orphaned tasks: {e}", exc_info=True)
            return 0

    async def _poll_loop(self) -> None:
        """Main polling loop."""
        logger.info(f"Worker polling every {self.poll_interval} seconds")
        in_flight: set[asyncio.Task] = set()

        while self.running:
            try:
                while len(in_flight) < self.max_concurrent_tasks:
                    task = await asyncio.to_thread(self._acquire_task)
                    if task is None:
                        break
                    runner = asyncio.create_task(asyncio.to_thread(self._execute_task, task))
                    in_flight.add(runner)
                    runner.add_done_callback(in_flight.discard)

                await asyncio.sleep(self.poll_interval)

            except Exception as e:
                logger.error(f"Error in poll loop: {e}", exc_info=True)
                await asyncio.sleep(self.poll_interval)

        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)

    def process_next_task(self) -> bool:
        """Acquire and run one due task. Returns False when nothing was due."""
        task = self._acquire_task()
        if task is None:
            return False
        self._execute_task(task)
        return True

    def run_pending(self, limit: Optional[int] = None) -> int:
        """Run due tasks synchronously until none are left (or limit is hit)."""
        processed = 0
        while limit is None or processed < limit:
            if not self.process_next_task():
                break
            processed += 1
        return processed

    def _acquire_task(self) -> Optional[Task]:
        """
        Acquire a task using DB row-level locking.

        Returns:
            Task if acquired, None if no tasks available
        """
        try:
            with self.session_factory() as db:
                now = self.clock()
                # FOR UPDATE SKIP LOCKED on backends that support it, so only
                # one worker gets each task
                task = db.scalars(
                    select(Task)
                    .where(
                        Task.state == TaskState.PENDING.value,
                        or_(Task.scheduled_for.is_(None), Task.scheduled_for <= now),
                        Task.attempts < Task.max_attempts,
                    )
                    .order_by(Task.priority.desc(), Task.scheduled_for.asc(), Task.created_at.asc(), Task.id.asc())
                    .limit(1)
                    .with_for_update(skip_locked=True)
                ).first()

                if task is None:
                    return None

                task.state = TaskState.IN_PROGRESS.value
                task.locked_at = now
                task.attempts += 1
                task.last_attempt_at = now
                task.touch()

                db.commit()
                db.refresh(task)
                db.expunge(task)

                logger.info(f"Acquired task {task.id} (type: {task.task_type}, attempt: {task.attempts})")
                return task

        except Exception as e:
            logger.error(f"Error acquiring task: {e}", exc_info=True)
            return None

    def _execute_task(self, task: Task) -> None:
        """
        Execute a task and update its state.

        Args:
            task: Task to execute
        """
        log = get_logger_with_context(__name__, task_id=task.id)
        log.info(f"Executing task {task.id} (type: {task.task_type})")

        try:
            if task.task_type != CRM_SYNC_TASK:
                raise ValueError(f"Unknown task type: {task.task_type}")

            payload = task.payload if isinstance(task.payload, dict) else {}
            contact_id = payload.get("contact_id")
            if contact_id is None:
                raise ValueError(f"Task {task.id} has no contact_id")

            outcome = self.sync_job.perform(int(contact_id))

        except Exception as e:
            log.error(f"Error executing task {task.id}: {e}", exc_info=True)
            self._handle_task_failure(task, str(e))
            return

        self._apply_outcome(task, outcome)

    def _apply_outcome(self, task: Task, outcome: SyncOutcome) -> None:
        """Persist a sync outcome on its task, rescheduling or retrying as needed."""
        if outcome.state == SyncState.FAILED:
            if outcome.retriable:
                self._handle_task_failure(task, outcome.error or "sync failed", outcome.to_dict())
            else:
                self._finish_task(task, TaskState.DISCARDED, outcome.to_dict(), error=outcome.error)
            return

        with self.session_factory() as db:
            if outcome.state == SyncState.RETRY_SCHEDULED:
                # Rate limits and live leases are time-bound: run a fresh attempt
                # later instead of spending this task's retry budget
                retry = enqueue_sync(db, outcome.contact_id, delay=outcome.retry_after, now=self.clock())
                logger.info(f"Task {task.id} rescheduled as task {retry.id}")

            self._mark_finished(db, task, TaskState.COMPLETED, outcome.to_dict())
            db.commit()

    def _finish_task(
        self,
        task: Task,
        state: TaskState,
        result: dict[str, Any],
        error: Optional[str] = None,
    ) -> None:
        with self.session_factory() as db:
            self._mark_finished(db, task, state, result, error)
            db.commit()

    def _mark_finished(
        self,
        db: Session,
        task: Task,
        state: TaskState,
        result: dict[str, Any],
        error: Optional[str] = None,
    ) -> None:
        db_task = db.get(Task, task.id)
        if db_task is None:
            return

        db_task.state = state.value
        db_task.result = result
        db_task.last_error = error
        db_task.completed_at = self.clock()
        db_task.locked_at = None
        db_task.touch()

        track_task(db_task.task_type, state.value)
        logger.info(f"Task {task.id} finished as {state.value}")

    def _handle_task_failure(
        self,
        task: Task,
        error: str,
        result: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Handle task failure with retry logic.

        Args:
            task: Failed task
            error: Error message
            result: Optional outcome payload to keep on the task
        """
        try:
            with self.session_factory() as db:
                db_task = db.get(Task, task.id)
                if db_task is None:
                    return

                db_task.last_error = error
                db_task.locked_at = None
                if result is not None:
                    db_task.result = result

                if db_task.attempts < db_task.max_attempts:
                    # Exponential backoff: base * 2^attempts
                    backoff_seconds = self.retry_base_delay * 2 ** db_task.attempts
                    db_task.scheduled_for = self.clock() + timedelta(seconds=backoff_seconds)
                    db_task.state = TaskState.PENDING.value
                    db_task.touch()

                    logger.info(
                        f"Task {task.id} will retry in {backoff_seconds} seconds "
                        f"(attempt {db_task.attempts}/{db_task.max_attempts})"
                    )
                else:
                    db_task.state = TaskState.FAILED.value
                    db_task.completed_at = self.clock()
                    db_task.touch()
                    track_task(db_task.task_type, TaskState.FAILED.value)

                    logger.error(
                        f"Task {task.id} failed permanently after {db_task.attempts} attempts: {error}"
                    )

                db.commit()

        except Exception as e:
            logger.error(f"Error handling task failure: {e}", exc_info=True)


def build_worker() -> TaskWorker:
    """Wire the worker with the process-wide session factory and CRM client."""
    from ..core.database import SessionLocal
    from .acme_crm import AcmeCrmClient

    client = AcmeCrmClient()
    sync_job = CrmSyncJob(SessionLocal, client)
    return TaskWorker(
        session_factory=SessionLocal,
        sync_job=sync_job,
        poll_interval=settings.worker_poll_interval,
        max_concurrent_tasks=10,
        lock_timeout=300,
    )


def main() -> None:
    """Main entry point for the worker."""
    from ..core.database import create_db_and_tables
    from ..core.logging_config import setup_structured_logging
    from ..core.security import setup_security_logging

    setup_structured_logging(log_level=settings.log_level)
    setup_security_logging()
    create_db_and_tables()

    logger.info("Starting task worker...")
    worker = build_worker()

    try:
        worker.start()
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
    except Exception as e:
        logger.error(f"Worker crashed: {e}", exc_info=True)
        sys.exit(1)
    finally:
        worker.stop()
        worker.sync_job.client.close()
        logger.info("Worker stopped")


if __name__ == "__main__":
    main()

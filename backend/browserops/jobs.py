# backend/browserops/jobs.py
"""
RQ entry points.

There is no scheduler process: each job is one `execute_next` invocation for a
session, and each invocation enqueues the next one when there is more to do.

- completed / failed: run the next task right away.
- retry_scheduled / scheduled: come back when the task is due (`enqueue_at`).
- no_tasks / blocked / claim_conflict: stop. Whoever changes the queue next
  (a schedule, a retry, or the invocation that won the claim) dispatches again.
"""

from __future__ import annotations

from datetime import datetime

import structlog
from sqlalchemy.orm import Session

from browserops.db import SessionLocal
from browserops.logging_config import configure_logging
from browserops.scheduler import build_scheduler
from browserops.schemas import ExecutionResult
from browserops.settings import settings
from browserops.worker import queue

logger = structlog.get_logger(__name__)

_RUN_AGAIN = ("completed", "failed")
_RUN_LATER = ("retry_scheduled", "scheduled")


def enqueue_execute_next(session_id: str, user_id: str, at: datetime | None = None) -> None:
    """Queue one execute_next invocation, now or at `at`."""
    if not settings.auto_dispatch:
        return
    if at is None:
        queue.enqueue(execute_next_job, session_id, user_id)
    else:
        queue.enqueue_at(at, execute_next_job, session_id, user_id)
    logger.debug("execute_next_enqueued", session_id=session_id, at=at.isoformat() if at else None)


def dispatch_follow_up(result: ExecutionResult, session_id: str, user_id: str) -> None:
    if result.status in _RUN_AGAIN:
        enqueue_execute_next(session_id, user_id)
    elif result.status in _RUN_LATER and result.scheduled_time is not None:
        enqueue_execute_next(session_id, user_id, at=result.scheduled_time)


def execute_next_job(session_id: str, user_id: str) -> None:
    """
    RQ worker entrypoint: run the next eligible task of a session.

    Safe to run any number of times concurrently; the claim in the scheduler
    decides which invocation gets a task. Adapter errors are absorbed into the
    task row (status is the source of truth), database errors fail the job.
    """
    configure_logging()
    db: Session = SessionLocal()
    try:
        result = build_scheduler(db).execute_next(session_id, user_id)
        logger.info(
            "execute_next_finished",
            session_id=session_id,
            task_id=result.task_id,
            status=result.status,
            provider=result.provider,
        )
        dispatch_follow_up(result, session_id, user_id)
    finally:
        db.close()

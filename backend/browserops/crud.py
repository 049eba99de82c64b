# backend/browserops/crud.py

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from browserops.models import CLAIMABLE_STATUSES, Task, TaskStatus
from browserops.schemas import CreateTaskData


def _utcnow() -> datetime:
    """Return timezone-aware UTC 'now'."""
    return datetime.now(timezone.utc)


def _as_utc(dt: datetime | None) -> datetime | None:
    """
    Normalize datetimes to timezone-aware UTC.

    - None stays None
    - naive datetimes are treated as UTC (SQLite hands them back naive)
    - aware datetimes are converted to UTC
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _as_uuid(value: Any) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def create_task(db: Session, data: CreateTaskData, default_max_retries: int = 3) -> Task:
    """Persist a new task as `pending`. Scheduling is a separate step."""
    task = Task(
        session_id=data.session_id,
        user_id=data.user_id,
        task_name=data.task_name,
        priority=data.priority,
        depends_on_task_id=data.depends_on_task_id,
        status=TaskStatus.pending,
        scheduled_time=_as_utc(data.scheduled_time),
        max_retries=data.max_retries if data.max_retries is not None else default_max_retries,
        actions=[a.model_dump(mode="json") for a in data.actions],
        parameters=data.parameters,
        instructions=data.instructions,
        target_url=data.target_url,
        timeout_seconds=data.timeout_seconds,
        complexity=data.complexity,
        requires_vision=data.requires_vision,
        is_high_risk=data.is_high_risk,
    )
    db.add(task)
    db.commit()
    db.refresh(task)
    return task


def get_task(db: Session, task_id, user_id: str | None = None) -> Task | None:
    """Fetch a task by id, optionally scoped to its owner."""
    key = _as_uuid(task_id)
    if key is None:
        return None
    task = db.get(Task, key)
    if task is None or (user_id is not None and task.user_id != user_id):
        return None
    return task


def list_runnable_tasks(db: Session, session_id: str, user_id: str) -> list[Task]:
    """
    All pending/queued tasks of a session in execution order:
    priority ascending, then creation time (FIFO within a priority band).
    """
    stmt = (
        select(Task)
        .where(Task.session_id == session_id)
        .where(Task.user_id == user_id)
        .where(Task.status.in_(CLAIMABLE_STATUSES))
        .order_by(Task.priority.asc(), Task.created_at.asc())
    )
    return list(db.execute(stmt).scalars().all())


def dependency_status(db: Session, task: Task) -> TaskStatus | None:
    """Status of the task's dependency, or None when it has none (or it vanished)."""
    if task.depends_on_task_id is None:
        return None
    dependency = db.get(Task, task.depends_on_task_id)
    return dependency.status if dependency is not None else None


def dependency_satisfied(db: Session, task: Task) -> bool:
    """
    True when the task has no dependency or its dependency is `completed`.

    A missing dependency row counts as unsatisfied. Chains block transitively:
    a task can only be `completed` after its own dependency was.
    """
    if task.depends_on_task_id is None:
        return True
    return dependency_status(db, task) == TaskStatus.completed


def transition_task(
    db: Session,
    task_id: uuid.UUID,
    expected: Iterable[TaskStatus],
    conditions: tuple = (),
    **values: Any,
) -> bool:
    """
    Compare-and-swap on task status.

    Applies `values` only if the row's current status is one of `expected` and
    every extra `conditions` clause holds, in a single conditional UPDATE, and
    commits. Returns whether this call won.
    """
    values.setdefault("updated_at", _utcnow())
    stmt = (
        update(Task)
        .where(Task.id == task_id)
        .where(Task.status.in_(tuple(expected)), *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    db.commit()
    return result.rowcount == 1


def claim_task(db: Session, task_id: uuid.UUID) -> bool:
    """
    Claim a task for execution: pending/queued -> executing, attempt_count + 1.

    This is the only guard against double execution across concurrent invocations.
    The row must also be due: a task another invocation already ran and re-queued
    with a backoff is not claimable from a stale read.
    """
    now = _utcnow()
    return transition_task(
        db,
        task_id,
        CLAIMABLE_STATUSES,
        conditions=(or_(Task.scheduled_time.is_(None), Task.scheduled_time <= now),),
        status=TaskStatus.executing,
        attempt_count=Task.attempt_count + 1,
        started_at=now,
        updated_at=now,
    )


def queue_counts(db: Session, session_id: str, user_id: str) -> dict[str, int]:
    stmt = (
        select(Task.status, func.count())
        .where(Task.session_id == session_id)
        .where(Task.user_id == user_id)
        .group_by(Task.status)
    )
    counts = {status.value: 0 for status in TaskStatus}
    for status, n in db.execute(stmt).all():
        key = status.value if isinstance(status, TaskStatus) else str(status)
        counts[key] = n
    return counts

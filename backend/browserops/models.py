# backend/browserops/models.py
"""
SQLAlchemy ORM models for the browser-automation orchestration layer.

Three tables make up the persisted state:
- `browser_automation_tasks`: one row per unit of automation work. Mutated only by the
  scheduler (claim, complete, fail, cancel, reschedule); never deleted.
- `browser_automation_audit`: append-only, one row per logged action, annotated with
  compliance flags. Nothing in the codebase updates or deletes these rows.
- `provider_executions`: raw execution history per provider. Provider health is derived
  from the most recent rows on demand; it is never stored.

Production notes:
- Timestamps are timezone-aware UTC end-to-end.
- The Postgres enum type is named explicitly (`browser_task_status`) to avoid drift across
  migrations/environments.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Enum, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class TaskStatus(str, enum.Enum):
    """
    Task lifecycle states.

    Allowed moves:
    - pending -> queued -> executing -> completed | failed | cancelled
    - executing -> queued (scheduled retry)
    - pending | queued -> cancelled
    """

    pending = "pending"
    queued = "queued"
    executing = "executing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


# Statuses a task may be claimed (or cancelled) from.
CLAIMABLE_STATUSES = (TaskStatus.pending, TaskStatus.queued)
TERMINAL_STATUSES = (TaskStatus.completed, TaskStatus.failed, TaskStatus.cancelled)


class Task(Base):
    """
    Represents one unit of browser-automation work.

    Columns overview:
    - id: UUID primary key.
    - session_id/user_id: owning automation session and user; every query is scoped by both.
    - task_name/priority: display name and urgency (lower = more urgent).
    - depends_on_task_id: optional task that must be `completed` before this one is eligible.
    - status/scheduled_time: lifecycle state and earliest execution time.
    - attempt_count/max_retries/last_error: retry bookkeeping.
    - actions/parameters/instructions/target_url/timeout_seconds: what the adapter runs.
    - complexity/requires_vision/is_high_risk: inputs to provider selection.
    - provider/result/execution_time_ms: outcome of the latest attempt.
    """

    __tablename__ = "browser_automation_tasks"
    __table_args__ = (
        Index("ix_browser_tasks_queue", "session_id", "status", "priority", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)

    session_id: Mapped[str] = mapped_column(String(100), index=True)
    user_id: Mapped[str] = mapped_column(String(100), index=True)
    task_name: Mapped[str] = mapped_column(String(200))
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)

    depends_on_task_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("browser_automation_tasks.id"), nullable=True
    )
    depends_on: Mapped["Task | None"] = relationship(remote_side="Task.id")

    status: Mapped[TaskStatus] = mapped_column(
        Enum(
            TaskStatus,
            name="browser_task_status",
            native_enum=True,
            create_constraint=False,
        ),
        default=TaskStatus.pending,
        index=True,
    )
    scheduled_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Retry bookkeeping. attempt_count is incremented by the claim.
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # What to run.
    actions: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    parameters: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    instructions: Mapped[str | None] = mapped_column(Text, nullable=True)
    target_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    timeout_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Provider selection inputs.
    complexity: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    requires_vision: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_high_risk: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Outcome of the latest attempt.
    provider: Mapped[str | None] = mapped_column(String(50), nullable=True)
    result: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    execution_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # created_at has a Python default as well so FIFO ordering within a priority band
    # does not depend on the database clock resolution.
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class AuditRecord(Base):
    """
    One logged action. Append-only.

    `response_data` is stored redacted whenever `pii_detected` is set.
    `compliance_flags` holds the names of the flags that fired (PII_DETECTED, ...).
    """

    __tablename__ = "browser_automation_audit"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    session_id: Mapped[str] = mapped_column(String(100), index=True)
    task_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    user_id: Mapped[str] = mapped_column(String(100), index=True)

    action_type: Mapped[str] = mapped_column(String(100))
    action_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    element_selector: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    response_data: Mapped[Any] = mapped_column(JSON, nullable=False, default=dict)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    screenshot_ref: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # `metadata` is reserved on declarative classes.
    action_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)

    compliance_flags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    pii_detected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    pii_fields: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    tos_violation_risk: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    rate_limit_warning: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    anti_bot_detected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )


class ProviderExecution(Base):
    """Raw execution-history row; the input to provider health scoring."""

    __tablename__ = "provider_executions"
    __table_args__ = (
        Index("ix_provider_executions_recent", "provider", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(50))
    task_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # "completed" or "failed"
    status: Mapped[str] = mapped_column(String(20))
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

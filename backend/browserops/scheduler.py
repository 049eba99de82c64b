# backend/browserops/scheduler.py
"""
Task scheduler: the task lifecycle, one short-lived call at a time.

Responsibility:
- Admit tasks (`pending`) and queue them for a time (`queued`).
- Pick the next eligible task of a session, claim it, and run it on the
  provider chosen by the ProviderSelector.
- Record the outcome: `completed`, a scheduled retry (`queued` again with a
  future scheduled_time), or `failed` once retries are exhausted.

Key design goals:
- No long-running loop and no in-process lock. Every entry point is an
  independent invocation; the conditional status UPDATE in `crud.claim_task`
  is the only thing preventing two invocations from running the same task.
- A claim lost to another invocation is not an error for the caller: the scan
  moves on to the next eligible task.
- A task whose dependency is not `completed` is never claimed, even when the
  dependency failed for good. Such a task stays blocked.
"""

from __future__ import annotations

import math
import time
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy.orm import Session

from browserops import crud
from browserops.adapters import (
    AdapterFactory,
    ExecutionEnvelope,
    ExecutionRequest,
    TaskAuditRecorder,
    get_execution_adapter,
)
from browserops.audit import AuditLog
from browserops.errors import ClaimConflict, DependencyUnsatisfied, InvalidRequest, InvalidTransition, TaskNotFound
from browserops.failover import ProviderSelector
from browserops.health import ProviderHealthMonitor, record_execution
from browserops.models import CLAIMABLE_STATUSES, TERMINAL_STATUSES, Task, TaskStatus
from browserops.retry import MAX_RETRIES_EXCEEDED, RetryPolicy, build_retry_policy
from browserops.schemas import (
    AuditAction,
    CancelResult,
    CreateTaskData,
    ExecutionResult,
    QueueStatus,
    ScheduleResult,
)
from browserops.settings import settings

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    """Return timezone-aware UTC 'now'."""
    return datetime.now(timezone.utc)


class TaskScheduler:
    def __init__(
        self,
        db: Session,
        selector: ProviderSelector,
        audit: AuditLog,
        adapter_factory: AdapterFactory = get_execution_adapter,
        retry_policy: RetryPolicy | None = None,
        default_max_retries: int | None = None,
    ) -> None:
        self.db = db
        self.selector = selector
        self.audit = audit
        self.adapter_factory = adapter_factory
        self.retry_policy = retry_policy or build_retry_policy()
        self.default_max_retries = (
            default_max_retries if default_max_retries is not None else settings.default_max_retries
        )

    # --------------------------------------------------------------------------
    # Lookups
    # --------------------------------------------------------------------------
    def get_task(self, task_id, user_id: str) -> Task:
        task = crud.get_task(self.db, task_id, user_id=user_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def _require_dependency(self, task: Task) -> None:
        if not crud.dependency_satisfied(self.db, task):
            status = crud.dependency_status(self.db, task)
            raise DependencyUnsatisfied(task.id, task.depends_on_task_id, status.value if status else None)

    # --------------------------------------------------------------------------
    # Admission and scheduling
    # --------------------------------------------------------------------------
    def create_task(self, data: CreateTaskData) -> Task:
        if data.depends_on_task_id is not None:
            dependency = crud.get_task(self.db, data.depends_on_task_id, user_id=data.user_id)
            if dependency is None or dependency.session_id != data.session_id:
                raise TaskNotFound(data.depends_on_task_id)

        task = crud.create_task(self.db, data, default_max_retries=self.default_max_retries)
        logger.info(
            "task_created",
            task_id=str(task.id),
            session_id=task.session_id,
            priority=task.priority,
            depends_on=str(task.depends_on_task_id) if task.depends_on_task_id else None,
        )
        return task

    def schedule_task(self, task_id, user_id: str, scheduled_time: datetime | None = None) -> ScheduleResult:
        """
        Queue a task for `scheduled_time` (default: now).

        Past times are clamped to now. Fails when the dependency is not completed.
        """
        task = self.get_task(task_id, user_id)
        if task.status not in CLAIMABLE_STATUSES:
            raise InvalidTransition(task.id, task.status.value, TaskStatus.queued.value)
        self._require_dependency(task)

        now = _utcnow()
        when = crud._as_utc(scheduled_time) or now
        if when < now:
            when = now

        if not crud.transition_task(
            self.db, task.id, CLAIMABLE_STATUSES, status=TaskStatus.queued, scheduled_time=when
        ):
            self.db.refresh(task)
            raise InvalidTransition(task.id, task.status.value, TaskStatus.queued.value)

        logger.info("task_scheduled", task_id=str(task.id), scheduled_time=when.isoformat())
        return ScheduleResult(
            task_id=str(task.id),
            status=TaskStatus.queued.value,
            scheduled_time=when,
            message=f"Task scheduled for {when.isoformat()}",
        )

    # --------------------------------------------------------------------------
    # Execution
    # --------------------------------------------------------------------------
    def execute_next(self, session_id: str, user_id: str) -> ExecutionResult:
        started = time.monotonic()
        queue = crud.list_runnable_tasks(self.db, session_id, user_id)
        if not queue:
            return ExecutionResult(status="no_tasks", message="No tasks in queue")

        saw_eligible = False
        for task in queue:
            if not crud.dependency_satisfied(self.db, task):
                continue
            saw_eligible = True

            now = _utcnow()
            scheduled = crud._as_utc(task.scheduled_time)
            if scheduled is not None and scheduled > now:
                delay_ms = math.ceil((scheduled - now).total_seconds() * 1000)
                return ExecutionResult(
                    task_id=str(task.id),
                    status="scheduled",
                    attempts=task.attempt_count,
                    delay_ms=delay_ms,
                    scheduled_time=scheduled,
                    message=f"Task will execute in {math.ceil(delay_ms / 1000)} seconds",
                )

            try:
                self._claim(task)
            except ClaimConflict:
                logger.info("claim_conflict", task_id=str(task.id), session_id=session_id)
                continue

            return self._run_claimed(task, started)

        if not saw_eligible:
            return ExecutionResult(status="blocked", message="All tasks are blocked by dependencies")
        return ExecutionResult(
            status="claim_conflict",
            message="All eligible tasks were claimed by other invocations",
        )

    def _claim(self, task: Task) -> None:
        if not crud.claim_task(self.db, task.id):
            raise ClaimConflict(task.id)
        self.db.refresh(task)
        logger.info("task_claimed", task_id=str(task.id), attempt=task.attempt_count)

    def _run_claimed(self, task: Task, started: float) -> ExecutionResult:
        selection = self.selector.select_provider(task.complexity, task.requires_vision, task.is_high_risk)
        provider = selection.selected_provider
        recorder = TaskAuditRecorder(self.audit, task.session_id, str(task.id), task.user_id)

        attempt_start = time.monotonic()
        try:
            request = ExecutionRequest(
                session_id=task.session_id,
                task_id=str(task.id),
                user_id=task.user_id,
                task_name=task.task_name,
                actions=task.actions or [],
                parameters=task.parameters or {},
                instructions=task.instructions,
                target_url=task.target_url,
                timeout_seconds=task.timeout_seconds,
            )
            adapter = self.adapter_factory(provider)
            envelope = adapter.execute(request, recorder)
        except Exception as e:
            # The task row is the source of truth; an adapter blowing up is just a failed attempt.
            logger.exception("adapter_error", task_id=str(task.id), provider=provider)
            envelope = ExecutionEnvelope(status="failed", error=str(e) or e.__class__.__name__)

        duration_ms = envelope.execution_time_ms or int((time.monotonic() - attempt_start) * 1000)
        succeeded = envelope.status == "success"
        error = None
        if not succeeded:
            error = envelope.error or (
                "execution still pending" if envelope.status == "pending" else "Task execution failed"
            )

        record_execution(
            self.db,
            provider,
            "completed" if succeeded else "failed",
            duration_ms,
            task_id=str(task.id),
            error=error,
        )
        self.db.commit()

        recorder.record(AuditAction(
            action_type="task_complete" if succeeded else "task_failed",
            action_description=f"{'Completed' if succeeded else 'Failed'} task: {task.task_name}",
            success=succeeded,
            response_data=envelope.result,
            error=error,
            screenshot_ref=envelope.screenshots[0] if envelope.screenshots else None,
            duration_ms=duration_ms,
            metadata={
                "provider": provider,
                "attempt": task.attempt_count,
                "tokens_used": envelope.tokens_used,
                "cost_usd": envelope.cost_usd,
            },
        ))

        if succeeded:
            return self._complete(task, provider, envelope, duration_ms, started)
        return self._fail_attempt(task, provider, envelope, error, duration_ms, started)

    def _elapsed_ms(self, started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    def _outcome_lost(self, task: Task, provider: str, started: float) -> ExecutionResult:
        self.db.refresh(task)
        logger.warning("task_outcome_discarded", task_id=str(task.id), current_status=task.status.value)
        return ExecutionResult(
            task_id=str(task.id),
            status="claim_conflict",
            execution_time_ms=self._elapsed_ms(started),
            attempts=task.attempt_count,
            provider=provider,
            message=f"Task left executing state ({task.status.value}) before its outcome was recorded",
        )

    def _complete(
        self,
        task: Task,
        provider: str,
        envelope: ExecutionEnvelope,
        duration_ms: int,
        started: float,
    ) -> ExecutionResult:
        if not crud.transition_task(
            self.db,
            task.id,
            (TaskStatus.executing,),
            status=TaskStatus.completed,
            result=envelope.result or {},
            provider=provider,
            execution_time_ms=duration_ms,
            last_error=None,
            completed_at=_utcnow(),
        ):
            return self._outcome_lost(task, provider, started)

        logger.info("task_completed", task_id=str(task.id), provider=provider, duration_ms=duration_ms)
        return ExecutionResult(
            task_id=str(task.id),
            status=TaskStatus.completed.value,
            execution_time_ms=self._elapsed_ms(started),
            attempts=task.attempt_count,
            provider=provider,
            message="Task completed successfully",
        )

    def _fail_attempt(
        self,
        task: Task,
        provider: str,
        envelope: ExecutionEnvelope,
        error: str,
        duration_ms: int,
        started: float,
    ) -> ExecutionResult:
        decision = self.retry_policy.decide(task.attempt_count, task.max_retries)

        if decision.retry:
            when = _utcnow() + timedelta(milliseconds=decision.delay_ms)
            if not crud.transition_task(
                self.db,
                task.id,
                (TaskStatus.executing,),
                status=TaskStatus.queued,
                scheduled_time=when,
                last_error=error,
                provider=provider,
                result=envelope.result,
                execution_time_ms=duration_ms,
            ):
                return self._outcome_lost(task, provider, started)

            logger.warning(
                "task_retry_scheduled",
                task_id=str(task.id),
                provider=provider,
                attempt=task.attempt_count,
                delay_ms=decision.delay_ms,
                error=error,
            )
            return ExecutionResult(
                task_id=str(task.id),
                status="retry_scheduled",
                execution_time_ms=self._elapsed_ms(started),
                attempts=task.attempt_count,
                provider=provider,
                delay_ms=decision.delay_ms,
                scheduled_time=when,
                error=error,
                message=(
                    f"Execution failed: {error}. Retrying in {decision.delay_ms / 1000:g} seconds "
                    f"(attempt {task.attempt_count + 1}/{task.max_retries})"
                ),
            )

        if not crud.transition_task(
            self.db,
            task.id,
            (TaskStatus.executing,),
            status=TaskStatus.failed,
            last_error=MAX_RETRIES_EXCEEDED,
            provider=provider,
            result={**(envelope.result or {}), "error": error},
            execution_time_ms=duration_ms,
            completed_at=_utcnow(),
        ):
            return self._outcome_lost(task, provider, started)

        logger.error("task_failed", task_id=str(task.id), provider=provider, attempts=task.attempt_count, error=error)
        return ExecutionResult(
            task_id=str(task.id),
            status=TaskStatus.failed.value,
            execution_time_ms=self._elapsed_ms(started),
            attempts=task.attempt_count,
            provider=provider,
            error=error,
            message=f"Execution failed: {error}. Max retries exceeded",
        )

    # --------------------------------------------------------------------------
    # Retry / cancel / status
    # --------------------------------------------------------------------------
    def retry_task(self, task_id, user_id: str) -> ExecutionResult:
        """
        Re-queue a non-terminal task after the backoff delay for its attempt count,
        or fail it for good when its retries are used up.
        """
        task = self.get_task(task_id, user_id)
        if task.status in TERMINAL_STATUSES:
            raise InvalidTransition(task.id, task.status.value, TaskStatus.queued.value)

        current = task.status
        decision = self.retry_policy.decide(task.attempt_count, task.max_retries)
        if not decision.retry:
            if not crud.transition_task(
                self.db,
                task.id,
                (current,),
                status=TaskStatus.failed,
                last_error=MAX_RETRIES_EXCEEDED,
                completed_at=_utcnow(),
            ):
                self.db.refresh(task)
                raise InvalidTransition(task.id, task.status.value, TaskStatus.failed.value)
            logger.error("task_failed", task_id=str(task.id), attempts=task.attempt_count, error=MAX_RETRIES_EXCEEDED)
            return ExecutionResult(
                task_id=str(task.id),
                status=TaskStatus.failed.value,
                attempts=task.attempt_count,
                error=MAX_RETRIES_EXCEEDED,
                message=f"Max retries exceeded for task {task.id}",
            )

        self._require_dependency(task)
        when = _utcnow() + timedelta(milliseconds=decision.delay_ms)
        if not crud.transition_task(
            self.db,
            task.id,
            (current,),
            status=TaskStatus.queued,
            scheduled_time=when,
        ):
            self.db.refresh(task)
            raise InvalidTransition(task.id, task.status.value, TaskStatus.queued.value)

        logger.info("task_retry_scheduled", task_id=str(task.id), delay_ms=decision.delay_ms)
        return ExecutionResult(
            task_id=str(task.id),
            status="retry_scheduled",
            attempts=task.attempt_count,
            delay_ms=decision.delay_ms,
            scheduled_time=when,
            message=(
                f"Task will retry in {decision.delay_ms / 1000:g} seconds "
                f"(attempt {task.attempt_count + 1}/{task.max_retries})"
            ),
        )

    def cancel_task(self, task_id, user_id: str) -> CancelResult:
        """Cancel a pending/queued task. Executing tasks cannot be interrupted."""
        task = self.get_task(task_id, user_id)
        if task.status not in CLAIMABLE_STATUSES:
            raise InvalidTransition(task.id, task.status.value, TaskStatus.cancelled.value)

        if not crud.transition_task(
            self.db,
            task.id,
            CLAIMABLE_STATUSES,
            status=TaskStatus.cancelled,
            completed_at=_utcnow(),
        ):
            # Claimed between our read and the update.
            self.db.refresh(task)
            raise InvalidTransition(task.id, task.status.value, TaskStatus.cancelled.value)

        logger.info("task_cancelled", task_id=str(task.id))
        return CancelResult(
            task_id=str(task.id),
            status=TaskStatus.cancelled.value,
            message=f"Task {task.id} cancelled successfully",
        )

    def get_queue_status(self, session_id: str, user_id: str) -> QueueStatus:
        if not session_id:
            raise InvalidRequest("session_id is required")
        counts = crud.queue_counts(self.db, session_id, user_id)
        return QueueStatus(total_tasks=sum(counts.values()), **counts)


def build_scheduler(db: Session, adapter_factory: AdapterFactory | None = None) -> TaskScheduler:
    """Wire a TaskScheduler with health-driven selection and the compliance-checked audit log."""
    monitor = ProviderHealthMonitor(db)
    return TaskScheduler(
        db,
        selector=ProviderSelector(monitor),
        audit=AuditLog(db),
        adapter_factory=adapter_factory or get_execution_adapter,
        retry_policy=build_retry_policy(settings.retry_delays_ms),
    )

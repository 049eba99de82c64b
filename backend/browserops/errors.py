# backend/browserops/errors.py
"""
Error taxonomy for the orchestration layer.

Components raise these; the API layer turns them into structured JSON bodies
(`{"error": message, **context}`) with `status_code` as the HTTP status.
"""

from __future__ import annotations

from typing import Any


class OrchestratorError(Exception):
    status_code = 500

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, **self.context}


class InvalidRequest(OrchestratorError):
    """Missing or malformed input. Never retried."""

    status_code = 400


class TaskNotFound(OrchestratorError):
    status_code = 404

    def __init__(self, task_id: Any) -> None:
        super().__init__(f"Task not found: {task_id}", task_id=str(task_id))


class DependencyUnsatisfied(OrchestratorError):
    """The task's dependency has not completed yet; the task stays where it is."""

    status_code = 409

    def __init__(self, task_id: Any, depends_on_task_id: Any, dependency_status: str | None) -> None:
        super().__init__(
            "Task dependencies not satisfied",
            task_id=str(task_id),
            depends_on_task_id=str(depends_on_task_id),
            dependency_status=dependency_status,
        )


class ClaimConflict(OrchestratorError):
    """Another invocation claimed the task first."""

    status_code = 409

    def __init__(self, task_id: Any) -> None:
        super().__init__(f"Task {task_id} was claimed by another invocation", task_id=str(task_id))


class InvalidTransition(OrchestratorError):
    status_code = 409

    def __init__(self, task_id: Any, current: str, target: str) -> None:
        super().__init__(
            f"Cannot move task with status {current} to {target}",
            task_id=str(task_id),
            current_status=current,
            target_status=target,
        )


class UnknownProvider(OrchestratorError):
    status_code = 404

    def __init__(self, provider: str) -> None:
        super().__init__(f"Unknown provider: {provider}", provider=provider)

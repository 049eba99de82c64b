# backend/browserops/schemas.py
"""
Pydantic schemas (request/response models) for the action API.

Every endpoint takes an envelope `{"action": ..., "data": {...}}`. The envelopes are
discriminated unions on `action`, so an unknown action or a missing field is rejected
by validation before any component runs. Browser sub-actions stored on a task are a
second discriminated union, on `type`.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, RootModel, model_validator

from browserops.models import TaskStatus


# ------------------------------------------------------------------------------
# Browser sub-actions
# ------------------------------------------------------------------------------
class _TargetedAction(BaseModel):
    selector: Optional[str] = None
    xpath: Optional[str] = None

    @model_validator(mode="after")
    def _needs_target(self):
        if not self.selector and not self.xpath:
            raise ValueError(f"{self.type} action requires selector or xpath")
        return self


class NavigateAction(BaseModel):
    type: Literal["navigate"] = "navigate"
    url: str = Field(..., min_length=1)


class ClickAction(_TargetedAction):
    type: Literal["click"] = "click"


class FillAction(BaseModel):
    type: Literal["fill"] = "fill"
    selector: str = Field(..., min_length=1)
    value: str


class SubmitAction(BaseModel):
    type: Literal["submit"] = "submit"
    selector: Optional[str] = None


class ExtractAction(_TargetedAction):
    type: Literal["extract"] = "extract"


class ScreenshotAction(BaseModel):
    type: Literal["screenshot"] = "screenshot"
    full_page: bool = False


class WaitAction(BaseModel):
    type: Literal["wait"] = "wait"
    wait_ms: int = Field(..., ge=0, le=600_000)


class ScrollAction(BaseModel):
    type: Literal["scroll"] = "scroll"
    direction: Literal["up", "down"] = "down"
    pixels: Optional[int] = Field(default=None, ge=0)


BrowserAction = Annotated[
    Union[
        NavigateAction,
        ClickAction,
        FillAction,
        SubmitAction,
        ExtractAction,
        ScreenshotAction,
        WaitAction,
        ScrollAction,
    ],
    Field(discriminator="type"),
]


# ------------------------------------------------------------------------------
# Scheduler actions
# ------------------------------------------------------------------------------
class CreateTaskData(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=100)
    user_id: str = Field(..., min_length=1, max_length=100)
    task_name: str = Field(..., min_length=1, max_length=200)
    priority: int = Field(default=5, ge=0, description="Lower is more urgent")
    depends_on_task_id: Optional[uuid.UUID] = None
    max_retries: Optional[int] = Field(default=None, ge=1, le=20)
    scheduled_time: Optional[datetime] = None
    actions: list[BrowserAction] = Field(default_factory=list)
    parameters: dict[str, Any] = Field(default_factory=dict)
    instructions: Optional[str] = None
    target_url: Optional[str] = Field(default=None, max_length=2048)
    timeout_seconds: Optional[int] = Field(default=None, ge=1)
    complexity: int = Field(default=5, ge=1, le=10)
    requires_vision: bool = False
    is_high_risk: bool = False


class ScheduleTaskData(BaseModel):
    task_id: uuid.UUID
    user_id: str
    scheduled_time: Optional[datetime] = None


class TaskRefData(BaseModel):
    task_id: uuid.UUID
    user_id: str


class SessionRefData(BaseModel):
    session_id: str
    user_id: str


class CreateTaskRequest(BaseModel):
    action: Literal["create_task"]
    data: CreateTaskData


class GetTaskRequest(BaseModel):
    action: Literal["get_task"]
    data: TaskRefData


class ScheduleTaskRequest(BaseModel):
    action: Literal["schedule_task"]
    data: ScheduleTaskData


class ExecuteNextRequest(BaseModel):
    action: Literal["execute_next"]
    data: SessionRefData


class RetryTaskRequest(BaseModel):
    action: Literal["retry_task"]
    data: TaskRefData


class CancelTaskRequest(BaseModel):
    action: Literal["cancel_task"]
    data: TaskRefData


class QueueStatusRequest(BaseModel):
    action: Literal["get_queue_status"]
    data: SessionRefData


SchedulerRequest = Annotated[
    Union[
        CreateTaskRequest,
        GetTaskRequest,
        ScheduleTaskRequest,
        ExecuteNextRequest,
        RetryTaskRequest,
        CancelTaskRequest,
        QueueStatusRequest,
    ],
    Field(discriminator="action"),
]


class SchedulerEnvelope(RootModel[SchedulerRequest]):
    pass


# ------------------------------------------------------------------------------
# Failover actions
# ------------------------------------------------------------------------------
class SelectProviderData(BaseModel):
    task_complexity: int = Field(default=5, ge=0, le=10)
    requires_vision: bool = False
    is_high_risk: bool = False


class ReportFailureData(BaseModel):
    provider: str = Field(..., min_length=1)
    error_message: str
    task_id: Optional[str] = None


class ProviderRefData(BaseModel):
    provider: str = Field(..., min_length=1)


class SelectProviderRequest(BaseModel):
    action: Literal["select_provider"]
    data: SelectProviderData = Field(default_factory=SelectProviderData)


class ReportFailureRequest(BaseModel):
    action: Literal["report_failure"]
    data: ReportFailureData


class GetAllHealthRequest(BaseModel):
    action: Literal["get_all_health"]
    data: dict[str, Any] = Field(default_factory=dict)


class ResetCircuitBreakerRequest(BaseModel):
    action: Literal["reset_circuit_breaker"]
    data: ProviderRefData


class MonitorHealthRequest(BaseModel):
    action: Literal["monitor_health"]
    data: dict[str, Any] = Field(default_factory=dict)


FailoverRequest = Annotated[
    Union[
        SelectProviderRequest,
        ReportFailureRequest,
        GetAllHealthRequest,
        ResetCircuitBreakerRequest,
        MonitorHealthRequest,
    ],
    Field(discriminator="action"),
]


class FailoverEnvelope(RootModel[FailoverRequest]):
    pass


# ------------------------------------------------------------------------------
# Compliance actions
# ------------------------------------------------------------------------------
class AuditAction(BaseModel):
    """One action to be checked and appended to the audit log."""
    action_type: str = Field(..., min_length=1, max_length=100)
    action_description: Optional[str] = None
    url: Optional[str] = None
    element_selector: Optional[str] = None
    success: bool = True
    response_data: Optional[Any] = None
    error: Optional[str] = None
    screenshot_ref: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("screenshot_ref", "screenshot_url"),
    )
    duration_ms: Optional[int] = Field(default=None, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)


class LogActionData(BaseModel):
    session_id: str
    task_id: Optional[str] = None
    user_id: str
    action_data: AuditAction


class CheckComplianceData(BaseModel):
    domain: str
    action_type: str
    action_data: Optional[Any] = None
    response_data: Optional[Any] = None


class RedactData(BaseModel):
    text: str


class LogActionRequest(BaseModel):
    action: Literal["log_action"]
    data: LogActionData


class CheckComplianceRequest(BaseModel):
    action: Literal["check_compliance"]
    data: CheckComplianceData


class RedactPIIRequest(BaseModel):
    action: Literal["redact_pii"]
    data: RedactData


class ComplianceReportRequest(BaseModel):
    action: Literal["get_compliance_report"]
    data: SessionRefData


ComplianceRequest = Annotated[
    Union[
        LogActionRequest,
        CheckComplianceRequest,
        RedactPIIRequest,
        ComplianceReportRequest,
    ],
    Field(discriminator="action"),
]


class ComplianceEnvelope(RootModel[ComplianceRequest]):
    pass


# ------------------------------------------------------------------------------
# Responses
# ------------------------------------------------------------------------------
class TaskOut(BaseModel):
    """API response model representing a Task."""
    id: uuid.UUID
    session_id: str
    user_id: str
    task_name: str
    priority: int
    depends_on_task_id: Optional[uuid.UUID]
    status: TaskStatus
    scheduled_time: Optional[datetime]

    attempt_count: int
    max_retries: int
    last_error: Optional[str]

    provider: Optional[str]
    result: Optional[dict[str, Any]]
    execution_time_ms: Optional[int]

    created_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]

    class Config:
        from_attributes = True


class ScheduleResult(BaseModel):
    task_id: str
    status: str
    scheduled_time: Optional[datetime] = None
    message: str


class ExecutionResult(BaseModel):
    """
    Outcome of one execute_next / retry_task call.

    status is one of: no_tasks, blocked, scheduled, claim_conflict,
    completed, retry_scheduled, failed.
    """
    task_id: Optional[str] = None
    status: str
    execution_time_ms: int = 0
    attempts: int = 0
    message: str
    provider: Optional[str] = None
    delay_ms: Optional[int] = None
    scheduled_time: Optional[datetime] = None
    error: Optional[str] = None


class CancelResult(BaseModel):
    task_id: str
    status: str
    message: str


class QueueStatus(BaseModel):
    total_tasks: int = 0
    pending: int = 0
    queued: int = 0
    executing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0

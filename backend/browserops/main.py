# backend/browserops/main.py

from __future__ import annotations

from typing import Any

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from browserops import __version__
from browserops.adapters import AdapterFactory, get_execution_adapter
from browserops.audit import AuditLog
from browserops.compliance import ComplianceFilter
from browserops.db import get_db
from browserops.errors import OrchestratorError
from browserops.failover import ProviderSelector
from browserops.health import ProviderHealthMonitor
from browserops.jobs import dispatch_follow_up, enqueue_execute_next
from browserops.logging_config import configure_logging
from browserops.scheduler import build_scheduler
from browserops.schemas import (
    CancelTaskRequest,
    CheckComplianceRequest,
    ComplianceEnvelope,
    ComplianceReportRequest,
    CreateTaskRequest,
    ExecuteNextRequest,
    FailoverEnvelope,
    GetAllHealthRequest,
    GetTaskRequest,
    LogActionRequest,
    MonitorHealthRequest,
    QueueStatusRequest,
    RedactPIIRequest,
    ReportFailureRequest,
    ResetCircuitBreakerRequest,
    RetryTaskRequest,
    ScheduleTaskRequest,
    SchedulerEnvelope,
    SelectProviderRequest,
    TaskOut,
)

configure_logging()
logger = structlog.get_logger(__name__)

app = FastAPI(title="BrowserOps Orchestrator", version=__version__)

# ------------------------------------------------------------------------------
# CORS middleware
# ------------------------------------------------------------------------------
# Browser clients call the action endpoints directly.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ------------------------------------------------------------------------------
# Dependencies
# ------------------------------------------------------------------------------
def get_adapter_factory() -> AdapterFactory:
    """Which adapter runs a task on a given provider. Overridden in tests."""
    return get_execution_adapter


def _ok(payload: Any) -> dict[str, Any]:
    return {"success": True, **jsonable_encoder(payload)}


# ------------------------------------------------------------------------------
# Error handlers
# ------------------------------------------------------------------------------
@app.exception_handler(OrchestratorError)
def handle_orchestrator_error(request: Request, exc: OrchestratorError) -> JSONResponse:
    logger.info("request_rejected", path=request.url.path, error=exc.message, status_code=exc.status_code)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(RequestValidationError)
def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
    )


# ------------------------------------------------------------------------------
# Health check
# ------------------------------------------------------------------------------
@app.get("/health")
def health():
    """Liveness probe. Provider health lives behind POST /failover."""
    return {"ok": True}


# ------------------------------------------------------------------------------
# Scheduler
# ------------------------------------------------------------------------------
@app.post("/scheduler")
def api_scheduler(
    payload: SchedulerEnvelope,
    db: Session = Depends(get_db),
    adapter_factory: AdapterFactory = Depends(get_adapter_factory),
):
    """
    Task lifecycle actions.

    Scheduling or retrying a task enqueues an `execute_next` job for its session
    at the time the task becomes due; `execute_next` run inline chains the same
    way a worker job would.
    """
    scheduler = build_scheduler(db, adapter_factory)
    request = payload.root
    data = request.data

    if isinstance(request, CreateTaskRequest):
        task = scheduler.create_task(data)
        return _ok({"task": TaskOut.model_validate(task)})

    if isinstance(request, GetTaskRequest):
        task = scheduler.get_task(data.task_id, data.user_id)
        return _ok({"task": TaskOut.model_validate(task)})

    if isinstance(request, ScheduleTaskRequest):
        task = scheduler.get_task(data.task_id, data.user_id)
        result = scheduler.schedule_task(data.task_id, data.user_id, data.scheduled_time)
        enqueue_execute_next(task.session_id, task.user_id, at=result.scheduled_time)
        return _ok(result)

    if isinstance(request, ExecuteNextRequest):
        result = scheduler.execute_next(data.session_id, data.user_id)
        dispatch_follow_up(result, data.session_id, data.user_id)
        return _ok(result)

    if isinstance(request, RetryTaskRequest):
        task = scheduler.get_task(data.task_id, data.user_id)
        result = scheduler.retry_task(data.task_id, data.user_id)
        if result.status == "retry_scheduled":
            enqueue_execute_next(task.session_id, task.user_id, at=result.scheduled_time)
        return _ok(result)

    if isinstance(request, CancelTaskRequest):
        return _ok(scheduler.cancel_task(data.task_id, data.user_id))

    if isinstance(request, QueueStatusRequest):
        return _ok({"queue_status": scheduler.get_queue_status(data.session_id, data.user_id)})

    raise AssertionError(f"unhandled scheduler action: {request.action}")


# ------------------------------------------------------------------------------
# Failover
# ------------------------------------------------------------------------------
@app.post("/failover")
def api_failover(payload: FailoverEnvelope, db: Session = Depends(get_db)):
    """Provider selection and circuit-breaker administration."""
    monitor = ProviderHealthMonitor(db)
    selector = ProviderSelector(monitor)
    request = payload.root
    data = request.data

    if isinstance(request, SelectProviderRequest):
        return _ok(selector.select_provider(data.task_complexity, data.requires_vision, data.is_high_risk))

    if isinstance(request, ReportFailureRequest):
        return _ok(selector.report_provider_failure(data.provider, data.error_message, data.task_id))

    if isinstance(request, GetAllHealthRequest):
        return _ok({"providers": monitor.get_all_health()})

    if isinstance(request, ResetCircuitBreakerRequest):
        return _ok(selector.reset_circuit_breaker(data.provider))

    if isinstance(request, MonitorHealthRequest):
        return _ok(monitor.monitor_provider_health())

    raise AssertionError(f"unhandled failover action: {request.action}")


# ------------------------------------------------------------------------------
# Compliance
# ------------------------------------------------------------------------------
@app.post("/compliance")
def api_compliance(payload: ComplianceEnvelope, db: Session = Depends(get_db)):
    """Audit logging, compliance checks and PII redaction."""
    compliance = ComplianceFilter()
    request = payload.root
    data = request.data

    if isinstance(request, LogActionRequest):
        audit = AuditLog(db, compliance)
        return _ok(audit.log_action(data.session_id, data.task_id, data.user_id, data.action_data))

    if isinstance(request, CheckComplianceRequest):
        check = compliance.perform_compliance_check(
            data.domain, data.action_type, data.action_data, data.response_data
        )
        return _ok({"compliance_check": check, "flags": [flag.value for flag in check.flags]})

    if isinstance(request, RedactPIIRequest):
        return _ok({"redacted_text": compliance.redact_pii(data.text)})

    if isinstance(request, ComplianceReportRequest):
        audit = AuditLog(db, compliance)
        return _ok({"report": audit.get_compliance_report(data.session_id, data.user_id)})

    raise AssertionError(f"unhandled compliance action: {request.action}")

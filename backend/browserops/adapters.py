# backend/browserops/adapters.py
"""
Execution adapters: how a claimed task actually gets run.

The scheduler only knows the contract:

    adapter.execute(request, recorder) -> ExecutionEnvelope

`recorder` routes every sub-action through the compliance filter into the audit
log. The envelope looks the same whichever adapter produced it.

Adapters here:
- ScriptedBrowserAdapter: runs the task's typed action list through a BrowserDriver,
  auditing each action and enforcing `timeout_seconds` cumulatively.
- HttpExecutionAdapter: hands the task to a remote executor service (e.g. the vision agent).
- MockExecutionAdapter / MockBrowserDriver: deterministic local stand-ins.
"""

from __future__ import annotations

import time
import uuid
from typing import Any, Callable, Literal, Optional, Protocol

import httpx
import structlog
from pydantic import BaseModel, Field

from browserops.audit import AuditLog
from browserops.schemas import (
    AuditAction,
    BrowserAction,
    ClickAction,
    ExtractAction,
    FillAction,
    NavigateAction,
    ScreenshotAction,
    ScrollAction,
    SubmitAction,
    WaitAction,
)
from browserops.settings import settings

logger = structlog.get_logger(__name__)


class ExecutionRequest(BaseModel):
    session_id: str
    task_id: str
    user_id: str
    task_name: str
    actions: list[BrowserAction] = Field(default_factory=list)
    parameters: dict[str, Any] = Field(default_factory=dict)
    instructions: Optional[str] = None
    target_url: Optional[str] = None
    timeout_seconds: Optional[int] = None


class ExecutionEnvelope(BaseModel):
    status: Literal["success", "failed", "pending"]
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    screenshots: list[str] = Field(default_factory=list)
    tokens_used: Optional[int] = None
    cost_usd: Optional[float] = None
    execution_time_ms: int = 0


class ActionRecorder(Protocol):
    def record(self, action: AuditAction) -> None: ...


class ExecutionAdapter(Protocol):
    provider: str

    def execute(self, request: ExecutionRequest, recorder: ActionRecorder) -> ExecutionEnvelope: ...


class BrowserDriver(Protocol):
    """
    One browser session. `perform` runs a single action and returns what it observed:
    `url` (current page after the action), `data` (extracted content),
    `screenshot_ref` (where a screenshot was stored).
    """

    def perform(self, action: BrowserAction) -> dict[str, Any]: ...


AdapterFactory = Callable[[str], ExecutionAdapter]


class TaskAuditRecorder:
    """Binds an AuditLog to one task so adapters can record actions without ids."""

    def __init__(self, audit: AuditLog, session_id: str, task_id: str, user_id: str) -> None:
        self.audit = audit
        self.session_id = session_id
        self.task_id = task_id
        self.user_id = user_id
        self.recorded = 0

    def record(self, action: AuditAction) -> None:
        self.audit.log_action(self.session_id, self.task_id, self.user_id, action)
        self.recorded += 1


class ExecutionTimeout(Exception):
    pass


def _target(action: ClickAction | ExtractAction) -> str:
    return action.selector or action.xpath or ""


def _describe(action: BrowserAction) -> tuple[str, str]:
    """(audit action_type, human description) for one browser action."""
    if isinstance(action, NavigateAction):
        return "navigate", f"Navigate to {action.url}"
    if isinstance(action, ClickAction):
        return "click", f"Click element: {_target(action)}"
    if isinstance(action, FillAction):
        return "input", f"Fill field: {action.selector}"
    if isinstance(action, SubmitAction):
        return "submit", "Submit form"
    if isinstance(action, ExtractAction):
        return "extract", f"Extract data from: {_target(action)}"
    if isinstance(action, ScreenshotAction):
        return "screenshot", "Take screenshot"
    if isinstance(action, WaitAction):
        return "wait", f"Wait {action.wait_ms}ms"
    if isinstance(action, ScrollAction):
        return "scroll", "Scroll page"
    raise ValueError(f"Unknown action type: {action!r}")


def _result_entry(action: BrowserAction, observed: dict[str, Any]) -> dict[str, Any]:
    entry: dict[str, Any] = {"action": action.type, "status": "completed"}
    if isinstance(action, NavigateAction):
        entry["url"] = action.url
    elif isinstance(action, (ClickAction, ExtractAction)):
        entry["selector"] = _target(action)
    elif isinstance(action, FillAction):
        # Typed values are never echoed back.
        entry["selector"] = action.selector
        entry["value"] = "***REDACTED***"
    elif isinstance(action, WaitAction):
        entry["milliseconds"] = action.wait_ms
    if "data" in observed:
        entry["data"] = observed["data"]
    if observed.get("screenshot_ref"):
        entry["screenshot_ref"] = observed["screenshot_ref"]
    return entry


class ScriptedBrowserAdapter:
    """Runs a task's scripted action list, one audited step at a time."""

    def __init__(
        self,
        driver: BrowserDriver,
        provider: str = "playwright",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.driver = driver
        self.provider = provider
        self.clock = clock

    def execute(self, request: ExecutionRequest, recorder: ActionRecorder) -> ExecutionEnvelope:
        start = self.clock()
        results: list[dict[str, Any]] = []
        screenshots: list[str] = []
        current_url = request.target_url

        def elapsed_ms() -> int:
            return int((self.clock() - start) * 1000)

        try:
            for action in request.actions:
                action_type, description = _describe(action)
                action_start = self.clock()
                try:
                    observed = self.driver.perform(action) or {}
                except Exception as exc:
                    recorder.record(AuditAction(
                        action_type=action_type,
                        action_description=description,
                        url=current_url,
                        element_selector=getattr(action, "selector", None),
                        success=False,
                        error=str(exc),
                        duration_ms=int((self.clock() - action_start) * 1000),
                    ))
                    raise

                if isinstance(action, NavigateAction):
                    current_url = action.url
                current_url = observed.get("url") or current_url
                screenshot_ref = observed.get("screenshot_ref")
                if screenshot_ref:
                    screenshots.append(screenshot_ref)

                recorder.record(AuditAction(
                    action_type=action_type,
                    action_description=description,
                    url=current_url,
                    element_selector=getattr(action, "selector", None),
                    success=True,
                    response_data=observed.get("data"),
                    screenshot_ref=screenshot_ref,
                    duration_ms=(
                        action.wait_ms
                        if isinstance(action, WaitAction)
                        else int((self.clock() - action_start) * 1000)
                    ),
                ))
                results.append(_result_entry(action, observed))

                if request.timeout_seconds and (self.clock() - start) > request.timeout_seconds:
                    raise ExecutionTimeout(f"Task exceeded timeout of {request.timeout_seconds} seconds")

        except Exception as exc:
            logger.warning(
                "scripted_task_failed",
                task_id=request.task_id,
                provider=self.provider,
                actions_completed=len(results),
                error=str(exc),
            )
            return ExecutionEnvelope(
                status="failed",
                result={
                    "task_name": request.task_name,
                    "actions_completed": len(results),
                    "actions": results,
                },
                error=str(exc),
                screenshots=screenshots,
                execution_time_ms=elapsed_ms(),
            )

        return ExecutionEnvelope(
            status="success",
            result={
                "task_name": request.task_name,
                "actions_executed": len(results),
                "actions": results,
                "final_url": current_url,
            },
            screenshots=screenshots,
            execution_time_ms=elapsed_ms(),
        )


class HttpExecutionAdapter:
    """Delegates the whole task to a remote executor service over HTTP."""

    def __init__(self, provider: str, base_url: str, api_key: str | None = None, timeout: float = 120.0) -> None:
        self.provider = provider
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    def execute(self, request: ExecutionRequest, recorder: ActionRecorder) -> ExecutionEnvelope:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        payload = request.model_dump(mode="json")

        with httpx.Client(timeout=self.timeout) as client:
            r = client.post(f"{self.base_url}/execute", headers=headers, json=payload)
            r.raise_for_status()
            envelope = ExecutionEnvelope.model_validate(r.json())

        # Remote executors report their own step list; audit each one here.
        for step in (envelope.result or {}).get("actions", []):
            if not isinstance(step, dict) or "action_type" not in step:
                continue
            recorder.record(AuditAction.model_validate(step))
        return envelope


class MockExecutionAdapter:
    """Local stand-in for an agent-style executor. Always succeeds."""

    model = "mock-agent"

    def __init__(self, provider: str = "agent-browser") -> None:
        self.provider = provider

    def execute(self, request: ExecutionRequest, recorder: ActionRecorder) -> ExecutionEnvelope:
        return ExecutionEnvelope(
            status="success",
            result={
                "task_name": request.task_name,
                "provider": self.provider,
                "output": "Task completed successfully",
            },
            execution_time_ms=0,
        )


class MockBrowserDriver:
    """Browser driver that performs nothing and reports canned observations."""

    def perform(self, action: BrowserAction) -> dict[str, Any]:
        if isinstance(action, NavigateAction):
            return {"url": action.url}
        if isinstance(action, ExtractAction):
            return {"data": {"text": "Sample extracted data"}}
        if isinstance(action, ScreenshotAction):
            return {"screenshot_ref": f"mock://screenshots/{uuid.uuid4()}.png"}
        return {}


def get_execution_adapter(provider: str) -> ExecutionAdapter:
    mode = settings.executor_mode.lower()
    if mode == "http":
        base_url = settings.executor_urls.get(provider)
        if not base_url:
            raise RuntimeError(f"BROWSEROPS_EXECUTOR_URLS has no entry for provider {provider!r}")
        return HttpExecutionAdapter(
            provider,
            base_url,
            api_key=settings.executor_api_key,
            timeout=settings.executor_timeout_seconds,
        )
    if mode == "mock":
        if provider in ("agent-browser", "fallback"):
            return MockExecutionAdapter(provider)
        return ScriptedBrowserAdapter(MockBrowserDriver(), provider=provider)
    raise RuntimeError(f"Unknown executor mode: {settings.executor_mode!r}")

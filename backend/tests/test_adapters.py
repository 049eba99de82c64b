from __future__ import annotations

import httpx
import pytest

from browserops.adapters import (
    ExecutionRequest,
    HttpExecutionAdapter,
    MockBrowserDriver,
    MockExecutionAdapter,
    ScriptedBrowserAdapter,
    get_execution_adapter,
)
from browserops.settings import settings


class ListRecorder:
    def __init__(self) -> None:
        self.actions = []

    def record(self, action) -> None:
        self.actions.append(action)


class FakeClock:
    """Advances by `step` seconds on every read."""

    def __init__(self, step: float) -> None:
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


def _request(actions, timeout_seconds=None) -> ExecutionRequest:
    return ExecutionRequest(
        session_id="session-1",
        task_id="task-1",
        user_id="user-1",
        task_name="login",
        actions=actions,
        target_url="https://example.org",
        timeout_seconds=timeout_seconds,
    )


def test_scripted_run_audits_each_action():
    recorder = ListRecorder()
    adapter = ScriptedBrowserAdapter(MockBrowserDriver())

    envelope = adapter.execute(
        _request([
            {"type": "navigate", "url": "https://example.org/login"},
            {"type": "fill", "selector": "#user", "value": "jane@example.org"},
            {"type": "click", "selector": "#submit"},
            {"type": "extract", "selector": ".welcome"},
            {"type": "screenshot"},
            {"type": "wait", "wait_ms": 250},
        ]),
        recorder,
    )

    assert envelope.status == "success"
    assert envelope.result["actions_executed"] == 6
    assert envelope.result["final_url"] == "https://example.org/login"
    assert len(envelope.screenshots) == 1

    assert [a.action_type for a in recorder.actions] == [
        "navigate", "input", "click", "extract", "screenshot", "wait",
    ]
    assert recorder.actions[3].response_data == {"text": "Sample extracted data"}
    assert recorder.actions[5].duration_ms == 250


def test_fill_values_never_leave_the_adapter():
    recorder = ListRecorder()
    adapter = ScriptedBrowserAdapter(MockBrowserDriver())

    envelope = adapter.execute(
        _request([{"type": "fill", "selector": "#password", "value": "hunter2"}]),
        recorder,
    )

    assert envelope.result["actions"][0]["value"] == "***REDACTED***"
    assert "hunter2" not in recorder.actions[0].model_dump_json()


def test_timeout_is_checked_after_each_action():
    recorder = ListRecorder()
    # Every clock read advances 1s, so the run crosses 3s during the second action.
    adapter = ScriptedBrowserAdapter(MockBrowserDriver(), clock=FakeClock(step=1.0))

    envelope = adapter.execute(
        _request(
            [
                {"type": "navigate", "url": "https://example.org"},
                {"type": "click", "selector": "#a"},
                {"type": "click", "selector": "#b"},
                {"type": "click", "selector": "#c"},
            ],
            timeout_seconds=3,
        ),
        recorder,
    )

    assert envelope.status == "failed"
    assert envelope.error == "Task exceeded timeout of 3 seconds"
    assert 0 < envelope.result["actions_completed"] < 4
    assert len(recorder.actions) == envelope.result["actions_completed"]


def test_driver_error_returns_partial_results():
    class FlakyDriver(MockBrowserDriver):
        def perform(self, action):
            if action.type == "click":
                raise RuntimeError("element #buy not found")
            return super().perform(action)

    recorder = ListRecorder()
    envelope = ScriptedBrowserAdapter(FlakyDriver()).execute(
        _request([
            {"type": "navigate", "url": "https://example.org/shop"},
            {"type": "click", "selector": "#buy"},
            {"type": "screenshot"},
        ]),
        recorder,
    )

    assert envelope.status == "failed"
    assert envelope.error == "element #buy not found"
    assert envelope.result["actions_completed"] == 1
    assert [a.success for a in recorder.actions] == [True, False]
    assert recorder.actions[1].url == "https://example.org/shop"


def test_click_requires_a_target():
    with pytest.raises(ValueError):
        _request([{"type": "click"}])


def test_http_adapter_posts_request_and_audits_reported_steps(monkeypatch):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={
            "status": "success",
            "result": {
                "actions": [
                    {"action_type": "navigate", "url": "https://example.org", "success": True},
                    {"note": "no action_type, not audited"},
                ],
            },
            "tokens_used": 1200,
            "cost_usd": 0.02,
            "execution_time_ms": 900,
        })

    real_client = httpx.Client
    monkeypatch.setattr(
        "browserops.adapters.httpx.Client",
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
    )

    recorder = ListRecorder()
    adapter = HttpExecutionAdapter("agent-browser", "http://agent.local/", api_key="secret")
    envelope = adapter.execute(_request([]), recorder)

    assert seen == {"url": "http://agent.local/execute", "auth": "Bearer secret"}
    assert envelope.status == "success"
    assert envelope.tokens_used == 1200
    assert [a.action_type for a in recorder.actions] == ["navigate"]


def test_mock_mode_adapters(monkeypatch):
    monkeypatch.setattr(settings, "executor_mode", "mock")
    assert isinstance(get_execution_adapter("agent-browser"), MockExecutionAdapter)
    assert isinstance(get_execution_adapter("fallback"), MockExecutionAdapter)
    assert isinstance(get_execution_adapter("playwright"), ScriptedBrowserAdapter)


def test_http_mode_needs_a_url_per_provider(monkeypatch):
    monkeypatch.setattr(settings, "executor_mode", "http")
    monkeypatch.setattr(settings, "executor_urls", {"agent-browser": "http://agent.local"})

    assert isinstance(get_execution_adapter("agent-browser"), HttpExecutionAdapter)
    with pytest.raises(RuntimeError):
        get_execution_adapter("brightdata")

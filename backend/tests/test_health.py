from __future__ import annotations

from browserops.health import (
    CircuitState,
    ProviderConfig,
    ProviderHealthMonitor,
    circuit_state_for,
    record_execution,
)


def test_forty_percent_success_opens_circuit(db, add_history):
    add_history("playwright", ["completed"] * 40 + ["failed"] * 60)

    health = ProviderHealthMonitor(db).get_provider_health("playwright")

    assert health.success_rate == 40
    assert health.circuit_state is CircuitState.open
    assert health.error_count == 60
    assert health.total_executions == 100


def test_provider_without_history_is_open(db):
    health = ProviderHealthMonitor(db).get_provider_health("brightdata")
    assert health.success_rate == 0
    assert health.total_executions == 0
    assert health.circuit_state is CircuitState.open


def test_circuit_thresholds():
    assert circuit_state_for(49.9) is CircuitState.open
    assert circuit_state_for(50) is CircuitState.degraded
    assert circuit_state_for(79.9) is CircuitState.degraded
    assert circuit_state_for(80) is CircuitState.healthy


def test_only_the_most_recent_window_counts(db, add_history):
    # Old failures fall out of a window of 10.
    add_history("playwright", ["failed"] * 20 + ["completed"] * 10)
    monitor = ProviderHealthMonitor(db, ProviderConfig(window=10))

    health = monitor.get_provider_health("playwright")

    assert health.success_rate == 100
    assert health.circuit_state is CircuitState.healthy


def test_consecutive_failures_counts_newest_run(db, add_history):
    add_history("agent-browser", ["failed", "failed", "completed", "failed", "failed", "failed"], error="boom")

    health = ProviderHealthMonitor(db).get_provider_health("agent-browser")

    assert health.consecutive_failures == 3
    assert health.error_count == 5
    assert health.last_error == "boom"


def test_average_latency_ignores_missing_durations(db, add_history):
    add_history("playwright", ["completed", "completed"], duration_ms=300)
    add_history("playwright", ["completed"], duration_ms=None)

    health = ProviderHealthMonitor(db).get_provider_health("playwright")

    assert health.avg_latency_ms == 300


def test_monitor_reports_healthy_only_without_alerts(db, add_history):
    for provider in ("agent-browser", "playwright", "brightdata", "fallback"):
        add_history(provider, ["completed"] * 10)

    report = ProviderHealthMonitor(db).monitor_provider_health()

    assert report.status == "healthy"
    assert report.alerts == []
    assert set(report.health_summary.values()) == {"healthy"}


def test_monitor_raises_alerts(db, add_history):
    add_history("agent-browser", ["completed"] * 10, duration_ms=6000)
    add_history("playwright", ["completed"] * 6 + ["failed"] * 4)
    add_history("brightdata", ["failed"] * 5)
    add_history("fallback", ["completed"] * 10)

    report = ProviderHealthMonitor(db).monitor_provider_health()
    by_provider = {}
    for alert in report.alerts:
        by_provider.setdefault(alert.provider, set()).add(alert.severity)

    assert report.status == "degraded"
    assert by_provider["agent-browser"] == {"slow"}
    assert by_provider["playwright"] == {"warning", "error"}
    assert by_provider["brightdata"] == {"critical", "error"}
    assert "fallback" not in by_provider


def test_record_execution_feeds_health(db):
    record_execution(db, "playwright", "completed", 250, task_id="t-1")
    record_execution(db, "playwright", "failed", 50, task_id="t-2", error="timeout")
    db.commit()

    health = ProviderHealthMonitor(db).get_provider_health("playwright")

    assert health.total_executions == 2
    assert health.success_rate == 50
    assert health.consecutive_failures == 1
    assert health.last_error == "timeout"

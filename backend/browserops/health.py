# backend/browserops/health.py
"""
Provider health, derived from execution history.

Health is never stored. Each call reads the most recent `window` rows of
`provider_executions` for a provider and recomputes:

    success_rate          completed / total * 100
    avg_latency_ms        mean of the recorded (non-zero) durations
    error_count           failed rows in the window
    consecutive_failures  unbroken run of failed rows, newest first
    circuit_state         open (< 50), degraded (< 80), healthy otherwise

A provider with no history is reported `open`, so an unobserved provider is
never preferred by the selector.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from browserops.models import ProviderExecution
from browserops.settings import settings

logger = structlog.get_logger(__name__)


class CircuitState(str, enum.Enum):
    healthy = "healthy"
    degraded = "degraded"
    open = "open"


@dataclass(frozen=True)
class ProviderConfig:
    """Provider table and thresholds. Built once, shared by reference."""

    providers: tuple[str, ...] = ("agent-browser", "playwright", "brightdata", "fallback")
    vision_provider: str = "agent-browser"
    fallback_provider: str = "fallback"
    window: int = 100
    open_below: float = 50.0
    degraded_below: float = 80.0
    # Selector tuning.
    override_min_score: float = -50.0
    complexity_threshold: int = 7
    # Alerting.
    slow_latency_ms: int = 5000
    consecutive_failure_alert: int = 3

    def __post_init__(self) -> None:
        if self.vision_provider not in self.providers:
            raise ValueError(f"vision provider {self.vision_provider!r} is not a known provider")
        if self.fallback_provider not in self.providers:
            raise ValueError(f"fallback provider {self.fallback_provider!r} is not a known provider")


DEFAULT_PROVIDER_CONFIG = ProviderConfig(window=settings.health_window)


@dataclass
class ProviderHealth:
    provider: str
    success_rate: float
    avg_latency_ms: int
    error_count: int
    consecutive_failures: int
    circuit_state: CircuitState
    total_executions: int = 0
    last_error: str | None = None
    last_checked: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class HealthAlert:
    severity: str  # critical | warning | slow | error
    provider: str
    message: str


@dataclass
class HealthReport:
    status: str
    alerts: list[HealthAlert]
    health_summary: dict[str, str]


def circuit_state_for(success_rate: float, config: ProviderConfig = DEFAULT_PROVIDER_CONFIG) -> CircuitState:
    if success_rate < config.open_below:
        return CircuitState.open
    if success_rate < config.degraded_below:
        return CircuitState.degraded
    return CircuitState.healthy


class ProviderHealthMonitor:
    def __init__(self, db: Session, config: ProviderConfig = DEFAULT_PROVIDER_CONFIG) -> None:
        self.db = db
        self.config = config

    def _recent_executions(self, provider: str) -> list[ProviderExecution]:
        stmt = (
            select(ProviderExecution)
            .where(ProviderExecution.provider == provider)
            .order_by(ProviderExecution.created_at.desc(), ProviderExecution.id.desc())
            .limit(self.config.window)
        )
        return list(self.db.execute(stmt).scalars().all())

    def get_provider_health(self, provider: str) -> ProviderHealth:
        rows = self._recent_executions(provider)
        if not rows:
            return ProviderHealth(
                provider=provider,
                success_rate=0.0,
                avg_latency_ms=0,
                error_count=0,
                consecutive_failures=0,
                circuit_state=CircuitState.open,
            )

        total = len(rows)
        completed = sum(1 for r in rows if r.status == "completed")
        failed = sum(1 for r in rows if r.status == "failed")
        success_rate = completed / total * 100

        latencies = [r.duration_ms for r in rows if r.duration_ms]
        avg_latency = round(sum(latencies) / len(latencies)) if latencies else 0

        consecutive = 0
        for r in rows:
            if r.status != "failed":
                break
            consecutive += 1

        last_error = next((r.error for r in rows if r.status == "failed" and r.error), None)

        return ProviderHealth(
            provider=provider,
            success_rate=success_rate,
            avg_latency_ms=avg_latency,
            error_count=failed,
            consecutive_failures=consecutive,
            circuit_state=circuit_state_for(success_rate, self.config),
            total_executions=total,
            last_error=last_error,
        )

    def get_all_health(self) -> list[ProviderHealth]:
        return [self.get_provider_health(p) for p in self.config.providers]

    def monitor_provider_health(self) -> HealthReport:
        alerts: list[HealthAlert] = []
        summary: dict[str, str] = {}

        for health in self.get_all_health():
            summary[health.provider] = health.circuit_state.value

            if health.circuit_state is CircuitState.open:
                alerts.append(HealthAlert(
                    "critical",
                    health.provider,
                    f"CRITICAL: {health.provider} circuit breaker is OPEN "
                    f"(success rate: {health.success_rate:.1f}%)",
                ))
            elif health.circuit_state is CircuitState.degraded:
                alerts.append(HealthAlert(
                    "warning",
                    health.provider,
                    f"WARNING: {health.provider} is DEGRADED "
                    f"(success rate: {health.success_rate:.1f}%)",
                ))

            if health.avg_latency_ms > self.config.slow_latency_ms:
                alerts.append(HealthAlert(
                    "slow",
                    health.provider,
                    f"SLOW: {health.provider} latency is high ({health.avg_latency_ms}ms)",
                ))

            if health.consecutive_failures > self.config.consecutive_failure_alert:
                alerts.append(HealthAlert(
                    "error",
                    health.provider,
                    f"ERROR: {health.provider} has {health.consecutive_failures} consecutive failures",
                ))

        for alert in alerts:
            logger.warning("provider_health_alert", provider=alert.provider, severity=alert.severity, alert=alert.message)

        return HealthReport(
            status="healthy" if not alerts else "degraded",
            alerts=alerts,
            health_summary=summary,
        )


def record_execution(
    db: Session,
    provider: str,
    status: str,
    duration_ms: int | None,
    task_id: str | None = None,
    error: str | None = None,
) -> ProviderExecution:
    """Append one execution-history row. The caller commits."""
    row = ProviderExecution(
        provider=provider,
        task_id=task_id,
        status=status,
        duration_ms=duration_ms,
        error=error,
    )
    db.add(row)
    return row

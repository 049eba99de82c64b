# backend/browserops/failover.py
"""
Provider selection with circuit-breaker failover.

Scoring (per provider, from current health):

    score = 100
          - 100 if circuit is open
          - 30  if circuit is degraded
          - (100 - success_rate)
          - min(avg_latency_ms / 10, 50)

Task requirements override the ranking in priority order: vision, then
high-risk, then complexity above the threshold. Each override sends the task to
the vision-capable provider when its score is above `override_min_score`.
Otherwise the highest scoring provider with a positive score wins.

A final safety check never hands out an open circuit: the selection is
replaced with the best non-open provider (excluding the fallback), and only
when every such provider is open does the designated fallback get the task.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from browserops.errors import UnknownProvider
from browserops.health import (
    CircuitState,
    ProviderConfig,
    ProviderHealth,
    ProviderHealthMonitor,
)

logger = structlog.get_logger(__name__)

ALL_PROVIDERS_UNHEALTHY = "All providers unhealthy, using fallback"


@dataclass
class ProviderScore:
    provider: str
    score: float
    health: ProviderHealth


@dataclass
class ProviderSelection:
    selected_provider: str
    reason: str
    health_snapshot: list[ProviderHealth]
    scores: dict[str, float]
    message: str


@dataclass
class FailureReport:
    provider: str
    status: str
    message: str


@dataclass
class CircuitReset:
    provider: str
    message: str


def score_provider(health: ProviderHealth) -> float:
    score = 100.0
    if health.circuit_state is CircuitState.open:
        score -= 100
    elif health.circuit_state is CircuitState.degraded:
        score -= 30
    score -= 100 - health.success_rate
    score -= min(health.avg_latency_ms / 10, 50)
    return score


class ProviderSelector:
    def __init__(self, monitor: ProviderHealthMonitor, config: ProviderConfig | None = None) -> None:
        self.monitor = monitor
        self.config = config or monitor.config

    def rank(self, health_snapshot: list[ProviderHealth]) -> list[ProviderScore]:
        scores = [ProviderScore(h.provider, score_provider(h), h) for h in health_snapshot]
        # sort() is stable: equal scores keep the configured provider order.
        scores.sort(key=lambda s: s.score, reverse=True)
        return scores

    def _override_reason(self, complexity: int, requires_vision: bool, is_high_risk: bool) -> str | None:
        if requires_vision:
            return "Task requires vision analysis"
        if is_high_risk:
            return "High-risk task requires most capable provider"
        if complexity > self.config.complexity_threshold:
            return (
                f"Complex task (complexity > {self.config.complexity_threshold}) "
                f"requires {self.config.vision_provider}"
            )
        return None

    def select_provider(
        self,
        complexity: int = 5,
        requires_vision: bool = False,
        is_high_risk: bool = False,
    ) -> ProviderSelection:
        snapshot = self.monitor.get_all_health()
        ranked = self.rank(snapshot)
        by_name = {s.provider: s for s in ranked}

        selected = self.config.fallback_provider
        reason = ""

        override = self._override_reason(complexity, requires_vision, is_high_risk)
        preferred = by_name.get(self.config.vision_provider)
        if override and preferred and preferred.score > self.config.override_min_score:
            selected = preferred.provider
            reason = override
        else:
            best = next((s for s in ranked if s.score > 0), None)
            if best is not None:
                selected = best.provider
                reason = f"Selected based on health score ({round(best.score)})"
                if override:
                    reason = f"{self.config.vision_provider} unavailable; {reason}"

        chosen = by_name.get(selected)
        if chosen is None or chosen.health.circuit_state is CircuitState.open:
            working = next(
                (
                    s for s in ranked
                    if s.health.circuit_state is not CircuitState.open
                    and s.provider != self.config.fallback_provider
                ),
                None,
            )
            if working is not None:
                selected = working.provider
                reason = f"Primary provider unhealthy, failover to {selected}"
            else:
                selected = self.config.fallback_provider
                reason = ALL_PROVIDERS_UNHEALTHY
                logger.warning("all_providers_unhealthy", fallback=selected)

        logger.info("provider_selected", provider=selected, reason=reason)
        return ProviderSelection(
            selected_provider=selected,
            reason=reason,
            health_snapshot=snapshot,
            scores={s.provider: round(s.score, 2) for s in ranked},
            message=f"Selected provider: {selected}",
        )

    def report_provider_failure(
        self,
        provider: str,
        error_message: str,
        task_id: str | None = None,
    ) -> FailureReport:
        """
        Emit a failure signal for a provider.

        Stored history is not touched here; the execution row written by the
        scheduler is what moves the provider's health.
        """
        logger.error("provider_failure_reported", provider=provider, error=error_message, task_id=task_id)
        health = self.monitor.get_provider_health(provider)
        if health.circuit_state is CircuitState.open:
            logger.warning("circuit_breaker_open", provider=provider, success_rate=health.success_rate)
        return FailureReport(
            provider=provider,
            status=health.circuit_state.value,
            message=f"Failure reported for {provider}: {error_message}",
        )

    def reset_circuit_breaker(self, provider: str) -> CircuitReset:
        if provider not in self.config.providers:
            raise UnknownProvider(provider)
        logger.info("circuit_breaker_reset", provider=provider)
        return CircuitReset(provider=provider, message=f"Circuit breaker reset for {provider}")

# backend/browserops/retry.py
"""
Retry decision for failed execution attempts.

Backoff is exponential and capped: the delay table is indexed by
min(attempt_count, len(table) - 1), so attempts past the end of the table
keep reusing the last (largest) delay.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from browserops.settings import settings

DEFAULT_RETRY_DELAYS_MS = (2000, 4000, 8000)

MAX_RETRIES_EXCEEDED = "max retries exceeded"


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay_ms: int = 0


@dataclass(frozen=True)
class RetryPolicy:
    delays_ms: tuple[int, ...] = DEFAULT_RETRY_DELAYS_MS

    def __post_init__(self) -> None:
        if not self.delays_ms:
            raise ValueError("RetryPolicy needs at least one delay")

    def delay_for(self, attempt_count: int) -> int:
        index = min(max(attempt_count, 0), len(self.delays_ms) - 1)
        return self.delays_ms[index]

    def decide(self, attempt_count: int, max_retries: int) -> RetryDecision:
        if attempt_count >= max_retries:
            return RetryDecision(retry=False)
        return RetryDecision(retry=True, delay_ms=self.delay_for(attempt_count))


def build_retry_policy(delays_ms: Sequence[int] | None = None) -> RetryPolicy:
    return RetryPolicy(tuple(delays_ms if delays_ms is not None else settings.retry_delays_ms))

"""Retry and backoff rules for delay-queue jobs.

A job carries the policy it was enqueued with, so retries keep the backoff
that was configured when the note was scheduled even if settings change.
Attempt numbers count claims: the first retry follows attempt 1.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from config import SchedulerConfig, settings

_DELAY_RULES: dict[str, Callable[[float, int], float]] = {
    "none": lambda base, retry: 0.0,
    "fixed": lambda base, retry: base,
    "exponential": lambda base, retry: base * 2 ** (retry - 1),
}


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt limit and backoff applied to newly queued jobs."""

    max_attempts: int = 3
    backoff_strategy: str = "exponential"
    backoff_base_seconds: float = 2.0

    @staticmethod
    def from_settings(scheduler_config: SchedulerConfig | None = None) -> "RetryPolicy":
        scheduler_config = scheduler_config or settings.scheduler
        return RetryPolicy(
            max_attempts=int(scheduler_config.max_attempts),
            backoff_strategy=str(scheduler_config.backoff_strategy),
            backoff_base_seconds=float(scheduler_config.backoff_base_seconds),
        )

    def validate(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1.")
        _check_backoff(self.backoff_strategy, self.backoff_base_seconds)


def resolve_retry_policy(policy: RetryPolicy | None) -> RetryPolicy:
    """Return ``policy`` (or the configured one) after validating it."""
    resolved = policy if policy is not None else RetryPolicy.from_settings()
    resolved.validate()
    return resolved


def should_retry(attempt_count: int, max_attempts: int) -> bool:
    return int(attempt_count) < int(max_attempts)


def compute_backoff_delay_seconds(
    backoff_strategy: str,
    retry_count: int,
    backoff_base_seconds: float,
) -> float:
    """Seconds to wait before retry number ``retry_count`` (1-based).

    Exponential backoff on a 2 second base waits 2s, 4s, 8s, ...
    """
    if retry_count < 1:
        raise ValueError("retry_count must be >= 1.")
    _check_backoff(backoff_strategy, backoff_base_seconds)
    return float(_DELAY_RULES[backoff_strategy](float(backoff_base_seconds), retry_count))


def compute_retry_at(
    failed_at: datetime,
    retry_count: int,
    *,
    backoff_strategy: str,
    backoff_base_seconds: float,
) -> datetime:
    delay = compute_backoff_delay_seconds(backoff_strategy, retry_count, backoff_base_seconds)
    return failed_at + timedelta(seconds=delay)


def _check_backoff(strategy: str, base_seconds: float) -> None:
    if strategy not in _DELAY_RULES:
        raise ValueError(f"Unsupported backoff_strategy: {strategy!r}.")
    if base_seconds < 0:
        raise ValueError("backoff_base_seconds must be >= 0.")

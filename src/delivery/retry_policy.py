"""Retry and backoff policy helpers for notification delivery."""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from config import settings


@dataclass(frozen=True)
class RetryPolicy:
    """Retry/backoff configuration for notification delivery."""

    max_retries: int
    backoff_base_seconds: int
    backoff_cap_seconds: int

    @staticmethod
    def from_settings() -> "RetryPolicy":
        """Build a retry policy from delivery settings."""
        delivery_config = settings.delivery
        return RetryPolicy(
            max_retries=int(delivery_config.max_retries),
            backoff_base_seconds=int(delivery_config.backoff_base_seconds),
            backoff_cap_seconds=int(delivery_config.backoff_cap_seconds),
        )


def resolve_retry_policy(policy: RetryPolicy | None) -> RetryPolicy:
    """Return a validated retry policy, defaulting to settings when unset."""
    resolved = policy or RetryPolicy.from_settings()
    _validate_policy(resolved)
    return resolved


def should_retry(retry_count: int, max_retries: int) -> bool:
    """Return whether another retry is permitted after ``retry_count`` retries."""
    return int(retry_count) < int(max_retries)


def compute_backoff_delay_seconds(
    retry_count: int,
    backoff_base_seconds: int,
    backoff_cap_seconds: int,
) -> int:
    """Exponential delay before retry number ``retry_count``, capped."""
    if retry_count <= 0:
        raise ValueError("retry_count must be >= 1.")
    if backoff_base_seconds < 0:
        raise ValueError("backoff_base_seconds must be >= 0.")
    return min(backoff_cap_seconds, backoff_base_seconds * (2 ** (retry_count - 1)))


def apply_jitter(delay_seconds: float, rng: Callable[[], float] = random.random) -> float:
    """Spread a delay uniformly over [delay/2, delay]."""
    if delay_seconds <= 0:
        return 0.0
    half = delay_seconds / 2.0
    return half + half * rng()


def compute_retry_at(
    now: datetime,
    retry_count: int,
    policy: RetryPolicy,
    *,
    rng: Callable[[], float] = random.random,
) -> datetime:
    """Compute the next attempt time for retry number ``retry_count``."""
    delay = compute_backoff_delay_seconds(
        retry_count,
        policy.backoff_base_seconds,
        policy.backoff_cap_seconds,
    )
    return now + timedelta(seconds=apply_jitter(delay, rng))


def _validate_policy(policy: RetryPolicy) -> None:
    """Validate retry policy settings."""
    if policy.max_retries < 0:
        raise ValueError("max_retries must be >= 0.")
    if policy.backoff_base_seconds < 0:
        raise ValueError("backoff_base_seconds must be >= 0.")
    if policy.backoff_cap_seconds < policy.backoff_base_seconds:
        raise ValueError("backoff_cap_seconds must be >= backoff_base_seconds.")

"""
Retry Policy - bounded attempts with capped exponential backoff and jitter.

Injected into the executor; handlers never retry on their own.
"""
from __future__ import annotations

import random
from dataclasses import dataclass, field

from reviewbot.core.config import settings


def _calculate_backoff_seconds(
    attempt: int,
    *,
    base_seconds: float,
    multiplier: float,
    max_backoff_seconds: float,
) -> float:
    """
    Exponential backoff with a hard upper bound.

        backoff = base_seconds * multiplier ** (attempt - 1)

    attempt is 1-based (the first retry follows attempt 1). Stops multiplying
    as soon as the cap is reached, so a huge attempt count never computes a
    huge power.
    """
    if attempt < 1:
        attempt = 1

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0.0

    if base_seconds >= max_backoff_seconds or multiplier <= 1:
        return min(base_seconds, max_backoff_seconds)

    backoff = base_seconds
    for _ in range(attempt - 1):
        backoff *= multiplier
        if backoff >= max_backoff_seconds:
            return max_backoff_seconds
    return backoff


@dataclass
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 5.0
    multiplier: float = 2.0
    max_delay: float = 600.0
    jitter: float = 0.2  # fraction of the delay, applied symmetrically
    rng: random.Random = field(default_factory=random.Random, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not 0.0 <= self.jitter < 1.0:
            raise ValueError("jitter must be in [0, 1)")

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_SECONDS,
            multiplier=settings.RETRY_MULTIPLIER,
            max_delay=settings.RETRY_MAX_BACKOFF_SECONDS,
            jitter=settings.RETRY_JITTER,
        )

    def should_retry(self, attempt: int) -> bool:
        """attempt is the number of executions already made"""
        return attempt < self.max_attempts

    def base_delay_for(self, attempt: int) -> float:
        return _calculate_backoff_seconds(
            attempt,
            base_seconds=self.base_delay,
            multiplier=self.multiplier,
            max_backoff_seconds=self.max_delay,
        )

    def delay_for(self, attempt: int, retry_after: float | None = None) -> float:
        """Jittered delay before the next attempt, never above max_delay.

        retry_after (e.g. from a rate-limit header) is a lower bound.
        """
        delay = self.base_delay_for(attempt)
        if self.jitter:
            spread = delay * self.jitter
            delay = self.rng.uniform(delay - spread, delay + spread)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return max(0.0, min(delay, self.max_delay))

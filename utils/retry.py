"""Backoff policy for failed jobs.

The job queue is the only place that retries work. This module holds the
policy it applies; it deliberately provides no retry loop or decorator.

Usage:
    from utils.retry import RetryPolicy

    policy = RetryPolicy.from_settings(get_settings())
    if policy.should_retry(attempts):
        delay = policy.next_delay(attempts)
"""

import random
from dataclasses import dataclass


def calculate_backoff(
    attempt: int,
    base: float = 1.0,
    max_delay: float = 8.0,
    jitter: float = 1.0,
) -> float:
    """Calculate exponential backoff with optional jitter.

    Args:
        attempt: Number of attempts already made, minus one (0-indexed)
        base: Base delay in seconds
        max_delay: Maximum delay cap in seconds, applied before jitter
        jitter: Upper bound of the uniform random seconds added

    Returns:
        Delay in seconds before next retry
    """
    delay = min(base * (2 ** max(attempt, 0)), max_delay)

    # Add jitter to prevent thundering herd
    if jitter > 0:
        delay += random.uniform(0, jitter)

    return delay


@dataclass(frozen=True)
class RetryPolicy:
    """Retry limits and backoff shape for queued jobs."""

    max_attempts: int = 5
    backoff_base: float = 2.0
    backoff_max: float = 300.0
    jitter: float = 1.0

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.job_max_attempts,
            backoff_base=settings.job_backoff_base,
            backoff_max=settings.job_backoff_max,
            jitter=settings.job_backoff_jitter,
        )

    def should_retry(self, attempts: int, max_attempts: int | None = None) -> bool:
        """Whether a job that has run `attempts` times may run again."""
        limit = max_attempts if max_attempts is not None else self.max_attempts
        return attempts < limit

    def next_delay(self, attempts: int) -> float:
        """Delay before the next attempt after `attempts` failed runs."""
        return calculate_backoff(
            attempts - 1, self.backoff_base, self.backoff_max, self.jitter
        )

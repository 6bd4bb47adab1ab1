"""Shared utilities for the decision insights pipeline."""

from utils.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerOpen,
    CircuitState,
    get_circuit_breaker,
    get_circuit_breaker_stats,
)
from utils.retry import RetryPolicy, calculate_backoff
from utils.time import utcnow
from utils.vectors import content_hash, cosine_similarity, is_valid_vector

__all__ = [
    # Vector utilities
    "cosine_similarity",
    "content_hash",
    "is_valid_vector",
    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerOpen",
    "CircuitState",
    "get_circuit_breaker",
    "get_circuit_breaker_stats",
    # Retry policy
    "RetryPolicy",
    "calculate_backoff",
    # Time
    "utcnow",
]

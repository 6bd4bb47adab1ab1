"""Circuit breaker for the upstream capabilities (embedding, explanation).

States:
- CLOSED: calls pass through
- OPEN: calls fail fast with CircuitBreakerOpen until recovery_timeout passes
- HALF_OPEN: trial calls allowed; success_threshold successes close the circuit

The breaker never retries anything itself. Callers translate
CircuitBreakerOpen into TransientUpstreamError so the job queue reschedules
the work.

Usage:
    breaker = get_circuit_breaker("embedding", exceptions={TimeoutError})

    async with breaker:
        vector = await client.embeddings.create(...)
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Set, Type

from utils.logging import get_logger

logger = get_logger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(Exception):
    """Raised when the circuit is open and calls are rejected."""

    def __init__(self, name: str, time_remaining: float):
        self.name = name
        self.time_remaining = time_remaining
        super().__init__(
            f"Circuit breaker '{name}' is open. Retry in {time_remaining:.1f}s"
        )


@dataclass
class CircuitBreaker:
    """Trips after `failure_threshold` consecutive qualifying failures.

    Attributes:
        name: Identifier used in logs and metrics
        failure_threshold: Consecutive failures before opening
        recovery_timeout: Seconds to stay open before allowing a trial call
        success_threshold: Trial successes needed to close again
        exceptions: Exception types that count as failures (None = all)
        clock: Monotonic time source, replaceable in tests
    """

    name: str
    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    success_threshold: int = 2
    exceptions: Optional[Set[Type[Exception]]] = None
    clock: Callable[[], float] = time.monotonic

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False, repr=False)
    _failure_count: int = field(default=0, init=False, repr=False)
    _success_count: int = field(default=0, init=False, repr=False)
    _opened_at: Optional[float] = field(default=None, init=False, repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)
    _total_rejections: int = field(default=0, init=False, repr=False)

    @property
    def state(self) -> CircuitState:
        """Current state, moving OPEN to HALF_OPEN once the timeout elapses."""
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if self.clock() - self._opened_at >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
                self._success_count = 0
                logger.info(f"Circuit breaker '{self.name}' half-open")
        return self._state

    @property
    def time_until_retry(self) -> float:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self.recovery_timeout - (self.clock() - self._opened_at))

    def _counts_as_failure(self, exc: BaseException) -> bool:
        if self.exceptions is None:
            return True
        return isinstance(exc, tuple(self.exceptions))

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self.clock()
        self._success_count = 0

    async def _check_state(self) -> None:
        if self.state == CircuitState.OPEN:
            self._total_rejections += 1
            raise CircuitBreakerOpen(self.name, self.time_until_retry)

    async def _record_success(self) -> None:
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.success_threshold:
                    self._state = CircuitState.CLOSED
                    self._failure_count = 0
                    logger.info(f"Circuit breaker '{self.name}' closed")
            else:
                self._failure_count = 0

    async def _record_failure(self, exc: BaseException) -> None:
        async with self._lock:
            if not self._counts_as_failure(exc):
                return
            self._failure_count += 1
            if self._state == CircuitState.HALF_OPEN:
                self._open()
                logger.warning(
                    f"Circuit breaker '{self.name}' reopened: {type(exc).__name__}"
                )
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.failure_threshold
            ):
                self._open()
                logger.warning(
                    f"Circuit breaker '{self.name}' opened after "
                    f"{self._failure_count} consecutive failures"
                )

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at = None

    def get_stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "total_rejections": self._total_rejections,
        }

    async def __aenter__(self) -> "CircuitBreaker":
        await self._check_state()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_val is None:
            await self._record_success()
        else:
            await self._record_failure(exc_val)
        return False


_circuit_breakers: dict[str, CircuitBreaker] = {}


def get_circuit_breaker(
    name: str,
    failure_threshold: int = 5,
    recovery_timeout: float = 30.0,
    success_threshold: int = 2,
    exceptions: Optional[Set[Type[Exception]]] = None,
) -> CircuitBreaker:
    """Get or create a named circuit breaker (singleton per name)."""
    if name not in _circuit_breakers:
        _circuit_breakers[name] = CircuitBreaker(
            name=name,
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            success_threshold=success_threshold,
            exceptions=exceptions,
        )
    return _circuit_breakers[name]


def get_circuit_breaker_stats() -> list[dict[str, Any]]:
    return [cb.get_stats() for cb in _circuit_breakers.values()]


def reset_circuit_breakers() -> None:
    """Forget every registered breaker (a fresh process starts closed)."""
    _circuit_breakers.clear()

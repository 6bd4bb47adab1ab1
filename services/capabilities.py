"""Boundaries to the external AI capabilities.

The pipeline depends only on these abstract interfaces:

- EmbeddingCapability: text -> vector
- ExplanationCapability: structured evidence -> text (optional, best-effort)

`call_upstream()` is the single wrapper every concrete client uses. It applies
the bounded timeout and the circuit breaker, records metrics, and converts
provider failures into TransientUpstreamError or PermanentInputError.
It never retries; the job queue does.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, TypeVar

from openai import APIConnectionError, APIStatusError

from models.errors import PermanentInputError, TransientUpstreamError
from utils.circuit_breaker import CircuitBreaker, CircuitBreakerOpen
from utils.logging import get_logger
from utils.metrics import UPSTREAM_DURATION, UPSTREAM_REQUESTS

logger = get_logger(__name__)

T = TypeVar("T")

# HTTP status codes that are worth another attempt
RETRYABLE_STATUS_CODES = {408, 409, 429, 500, 502, 503, 504}


class EmbeddingCapability(ABC):
    """Turns text into a fixed-dimension vector."""

    @abstractmethod
    async def embed(self, text: str, input_type: str = "passage") -> list[float]:
        """input_type is "passage" for stored documents, "query" for searches."""

    @property
    @abstractmethod
    def dimensions(self) -> int:
        ...

    @property
    @abstractmethod
    def model_version(self) -> str:
        """Tag stored with every embedding this capability produced."""
        ...


class ExplanationCapability(ABC):
    """Renders a human-readable explanation from structured evidence."""

    @abstractmethod
    async def summarize(self, evidence: dict[str, Any]) -> str:
        ...


def is_retryable_upstream_error(error: BaseException) -> bool:
    """Classify a provider exception as transient (True) or permanent (False)."""
    if isinstance(error, (TimeoutError, ConnectionError, APIConnectionError, CircuitBreakerOpen)):
        return True
    if isinstance(error, APIStatusError):
        return error.status_code in RETRYABLE_STATUS_CODES
    return False


async def call_upstream(
    capability: str,
    breaker: CircuitBreaker,
    call: Callable[[], Awaitable[T]],
    timeout: float,
) -> T:
    """Run one upstream call under a timeout and circuit breaker.

    Raises:
        TransientUpstreamError: timeout, rate limit, 5xx, connection error, open circuit
        PermanentInputError: any other provider rejection (e.g. 400 bad input)
    """
    started = time.perf_counter()
    try:
        async with breaker:
            result = await asyncio.wait_for(call(), timeout=timeout)
    except CircuitBreakerOpen as e:
        UPSTREAM_REQUESTS.labels(capability=capability, status="circuit_open").inc()
        raise TransientUpstreamError(str(e)) from e
    except TimeoutError as e:
        UPSTREAM_REQUESTS.labels(capability=capability, status="timeout").inc()
        raise TransientUpstreamError(
            f"{capability} call timed out after {timeout:.1f}s"
        ) from e
    except Exception as e:
        if is_retryable_upstream_error(e):
            UPSTREAM_REQUESTS.labels(capability=capability, status="transient_error").inc()
            raise TransientUpstreamError(
                f"{capability} call failed: {type(e).__name__}: {e}"
            ) from e
        UPSTREAM_REQUESTS.labels(capability=capability, status="rejected").inc()
        raise PermanentInputError(
            f"{capability} rejected the request: {type(e).__name__}: {e}"
        ) from e
    finally:
        UPSTREAM_DURATION.labels(capability=capability).observe(time.perf_counter() - started)

    UPSTREAM_REQUESTS.labels(capability=capability, status="success").inc()
    return result

"""Error taxonomy for the decision insights pipeline.

Every component converts its internal failures into one of these at its
boundary. The job queue decides what happens next from the type alone:

    TransientUpstreamError  -> retry with exponential backoff
    PermanentInputError     -> dead-letter immediately, no retry
    ConsistencyViolation    -> dead-letter immediately and alert
    StaleEvent              -> treated as success (watermark no-op)
    DuplicateJob            -> never escapes enqueue(); the existing id is returned

Job records store failures as `error_detail(exc)`:
{
    "type": "TransientUpstreamError",
    "code": "upstream_unavailable",
    "message": "embedding call timed out after 10.0s",
    "retryable": true
}
"""

from typing import Any


class PipelineError(Exception):
    """Base class for pipeline errors."""

    code = "pipeline_error"
    retryable = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class TransientUpstreamError(PipelineError):
    """An upstream capability timed out, was rate limited, or is unavailable."""

    code = "upstream_unavailable"
    retryable = True


class PermanentInputError(PipelineError):
    """The input can never be processed (missing record, empty text, bad vector)."""

    code = "permanent_input"


class DuplicateJob(PipelineError):
    """An active job already holds the idempotency key."""

    code = "duplicate_job"

    def __init__(self, idempotency_key: str, existing_job_id: int):
        self.idempotency_key = idempotency_key
        self.existing_job_id = existing_job_id
        super().__init__(
            f"Active job {existing_job_id} already holds key '{idempotency_key}'",
            details={"existing_job_id": existing_job_id},
        )


class StaleEvent(PipelineError):
    """An event at or below the stored watermark; ignored, not a failure."""

    code = "stale_event"

    def __init__(self, scope_key: str, sequence: int, watermark: int):
        self.scope_key = scope_key
        self.sequence = sequence
        self.watermark = watermark
        super().__init__(
            f"Event {sequence} is not newer than watermark {watermark} "
            f"for scope '{scope_key}'"
        )


class ConsistencyViolation(PipelineError):
    """An invariant was broken (e.g. cross-owner data). Fatal for the operation."""

    code = "consistency_violation"


class TransientDeliveryError(Exception):
    """A delivery channel failed in a way worth retrying."""


class PermanentDeliveryError(Exception):
    """A delivery channel rejected the notification for good (e.g. bad destination)."""


def is_retryable(exc: BaseException) -> bool:
    """Whether the job queue should schedule another attempt.

    Unclassified exceptions are treated as transient; they still stop at
    the max attempt count.
    """
    if isinstance(exc, PipelineError):
        return exc.retryable
    return True


def error_detail(exc: BaseException) -> dict[str, Any]:
    """Structured representation stored on the job's last_error."""
    return {
        "type": type(exc).__name__,
        "code": getattr(exc, "code", "unexpected_error"),
        "message": str(exc)[:2000],
        "retryable": is_retryable(exc),
    }

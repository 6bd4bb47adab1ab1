# Models
from models.errors import (
    ConsistencyViolation,
    DuplicateJob,
    PermanentInputError,
    PipelineError,
    StaleEvent,
    TransientUpstreamError,
)
from models.schemas import (
    AnalyticsSnapshot,
    DomainEvent,
    EventKind,
    SummaryMetrics,
    TaskType,
)

__all__ = [
    "ConsistencyViolation",
    "DuplicateJob",
    "PermanentInputError",
    "PipelineError",
    "StaleEvent",
    "TransientUpstreamError",
    "AnalyticsSnapshot",
    "DomainEvent",
    "EventKind",
    "SummaryMetrics",
    "TaskType",
]

"""Pydantic models crossing component boundaries.

Domain events arrive from the CRUD layer; job payloads are tagged variants
stored as JSON on the job row and decoded with `parse_payload()`.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


# ============================================================================
# Domain events (consumed from the CRUD layer)
# ============================================================================


class EventKind(str, Enum):
    DECISION_CREATED = "decision.created"
    DECISION_UPDATED = "decision.updated"
    DECISION_ARCHIVED = "decision.archived"
    DECISION_DELETED = "decision.deleted"
    OUTCOME_CREATED = "outcome.created"


class DomainEvent(BaseModel):
    """Emitted by the CRUD layer after committing the primary record."""

    kind: EventKind
    owner_id: str = Field(..., min_length=1)
    entity_id: str = Field(..., min_length=1)
    sequence: int = Field(..., ge=0, description="Monotonic event sequence (watermark source)")
    # decision.updated: category before the edit, so the old scope can be rebuilt
    previous_category: Optional[str] = None
    # decision.updated: whether embedded text (title/category/description) changed
    text_changed: bool = True


# ============================================================================
# Job payloads (tagged by task_type)
# ============================================================================


class TaskType(str, Enum):
    EMBED_DECISION = "embed_decision"
    REMOVE_DECISION = "remove_decision"
    APPLY_OUTCOME = "apply_outcome"
    APPLY_DECISION_CHANGE = "apply_decision_change"
    RECOMPUTE_OWNER = "recompute_owner"
    EVALUATE_INSIGHTS = "evaluate_insights"
    DISPATCH_NOTIFICATION = "dispatch_notification"
    SWEEP_REMINDERS = "sweep_reminders"
    RECALCULATE_ANALYTICS = "recalculate_analytics"
    RECOVER_LEASES = "recover_leases"


class EmbedDecisionPayload(BaseModel):
    task_type: Literal["embed_decision"] = "embed_decision"
    decision_id: str
    owner_id: str
    sequence: int


class RemoveDecisionPayload(BaseModel):
    task_type: Literal["remove_decision"] = "remove_decision"
    decision_id: str
    owner_id: str


class ApplyOutcomePayload(BaseModel):
    task_type: Literal["apply_outcome"] = "apply_outcome"
    outcome_id: str
    owner_id: str
    sequence: int


class ApplyDecisionChangePayload(BaseModel):
    task_type: Literal["apply_decision_change"] = "apply_decision_change"
    decision_id: str
    owner_id: str
    sequence: int
    previous_category: Optional[str] = None


class RecomputeOwnerPayload(BaseModel):
    task_type: Literal["recompute_owner"] = "recompute_owner"
    owner_id: str


class EvaluateInsightsPayload(BaseModel):
    task_type: Literal["evaluate_insights"] = "evaluate_insights"
    owner_id: str


class NotificationPayload(BaseModel):
    """What the dispatcher delivers; dedupe_key identifies the source record."""

    task_type: Literal["dispatch_notification"] = "dispatch_notification"
    owner_id: str
    dedupe_key: str  # "insight:<id>" or "reminder:<id>"
    type: Literal["insight", "reminder"]
    title: str
    body: str
    data: dict = Field(default_factory=dict)


class SweepRemindersPayload(BaseModel):
    task_type: Literal["sweep_reminders"] = "sweep_reminders"


class RecalculateAnalyticsPayload(BaseModel):
    task_type: Literal["recalculate_analytics"] = "recalculate_analytics"


class RecoverLeasesPayload(BaseModel):
    task_type: Literal["recover_leases"] = "recover_leases"


JobPayload = Annotated[
    Union[
        EmbedDecisionPayload,
        RemoveDecisionPayload,
        ApplyOutcomePayload,
        ApplyDecisionChangePayload,
        RecomputeOwnerPayload,
        EvaluateInsightsPayload,
        NotificationPayload,
        SweepRemindersPayload,
        RecalculateAnalyticsPayload,
        RecoverLeasesPayload,
    ],
    Field(discriminator="task_type"),
]

_payload_adapter: TypeAdapter = TypeAdapter(JobPayload)


def parse_payload(task_type: str, payload: dict) -> BaseModel:
    """Decode a stored job payload into its typed variant."""
    return _payload_adapter.validate_python({**payload, "task_type": task_type})


# ============================================================================
# Analytics
# ============================================================================


class SummaryMetrics(BaseModel):
    """Aggregate metrics for one scope.

    The regression sums use x = outcome ordinal (0-based, ordered by event
    sequence) and y = satisfaction, so the trend slope can be updated
    incrementally and still match a full recompute.
    """

    decision_count: int = 0
    active_decision_count: int = 0
    outcome_count: int = 0
    satisfaction_sum: float = 0.0
    average_satisfaction: Optional[float] = None
    sum_x: float = 0.0
    sum_xx: float = 0.0
    sum_xy: float = 0.0
    trend_slope: float = 0.0
    time_to_outcome_sum: float = 0.0  # seconds
    average_time_to_outcome: Optional[float] = None  # seconds
    last_outcome_at: Optional[datetime] = None

    def finalize(self) -> "SummaryMetrics":
        """Recompute the derived fields from the running sums."""
        n = self.outcome_count
        if n:
            self.average_satisfaction = self.satisfaction_sum / n
            self.average_time_to_outcome = self.time_to_outcome_sum / n
        else:
            self.average_satisfaction = None
            self.average_time_to_outcome = None

        denominator = n * self.sum_xx - self.sum_x * self.sum_x
        if n >= 2 and denominator != 0:
            self.trend_slope = (n * self.sum_xy - self.sum_x * self.satisfaction_sum) / denominator
        else:
            self.trend_slope = 0.0
        return self

    def add_outcome(
        self, satisfaction: float, time_to_outcome: float, recorded_at: datetime
    ) -> "SummaryMetrics":
        """Fold one more outcome into the running sums."""
        x = float(self.outcome_count)
        self.outcome_count += 1
        self.satisfaction_sum += satisfaction
        self.sum_x += x
        self.sum_xx += x * x
        self.sum_xy += x * satisfaction
        self.time_to_outcome_sum += max(time_to_outcome, 0.0)
        if self.last_outcome_at is None or recorded_at > self.last_outcome_at:
            self.last_outcome_at = recorded_at
        return self.finalize()


class AnalyticsSnapshot(BaseModel):
    """Read model of an AnalyticsSummary row, as served to request handlers."""

    scope_key: str
    owner_id: str
    category: Optional[str] = None
    version: int
    watermark: int
    metrics: SummaryMetrics
    updated_at: datetime


# ============================================================================
# Query / delivery results
# ============================================================================


class SimilarityHit(BaseModel):
    decision_id: str
    score: float


class DeliveryResult(BaseModel):
    dedupe_key: str
    status: Literal["delivered", "duplicate", "failed"]
    channel: str
    detail: Optional[str] = None

import enum
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from db.postgres import Base
from utils.time import utcnow


def generate_uuid() -> str:
    return str(uuid4())


class DecisionStatus(str, enum.Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class JobState(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    FAILED = "failed"  # waiting for a retry
    SUCCEEDED = "succeeded"
    DEAD_LETTERED = "dead_lettered"
    SUPERSEDED = "superseded"


# States that hold an idempotency key and block later jobs on the same ordering key
ACTIVE_JOB_STATES = (JobState.PENDING.value, JobState.RUNNING.value, JobState.FAILED.value)
# States a worker may claim once scheduled_for is due
CLAIMABLE_JOB_STATES = (JobState.PENDING.value, JobState.FAILED.value)


class InsightKind(str, enum.Enum):
    PATTERN = "pattern"
    WARNING = "warning"
    SUGGESTION = "suggestion"


class DeliveryStatus(str, enum.Enum):
    DELIVERED = "delivered"
    RETRYING = "retrying"  # last attempt failed transiently
    FAILED = "failed"  # permanent, never retried


# ---------------------------------------------------------------------------
# Records owned by the CRUD layer (read-only to the pipeline, except
# Reminder.delivered_at which the dispatcher sets)
# ---------------------------------------------------------------------------


class Decision(Base):
    __tablename__ = "decisions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    owner_id: Mapped[str] = mapped_column(String(36), index=True)
    title: Mapped[str] = mapped_column(String(255))
    category: Mapped[str] = mapped_column(String(100), default="general")
    description: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(20), default=DecisionStatus.ACTIVE.value)
    last_event_seq: Mapped[int] = mapped_column(BigInteger, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class Outcome(Base):
    __tablename__ = "outcomes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    decision_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("decisions.id", ondelete="CASCADE"), index=True
    )
    owner_id: Mapped[str] = mapped_column(String(36), index=True)
    satisfaction: Mapped[float] = mapped_column(Float)  # 1-5
    reflection: Mapped[str] = mapped_column(Text, default="")
    sequence: Mapped[int] = mapped_column(BigInteger, index=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Reminder(Base):
    __tablename__ = "reminders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    decision_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("decisions.id", ondelete="CASCADE"), index=True
    )
    owner_id: Mapped[str] = mapped_column(String(36), index=True)
    message: Mapped[str] = mapped_column(Text, default="")
    remind_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


# ---------------------------------------------------------------------------
# Records owned by the pipeline
# ---------------------------------------------------------------------------


class DecisionEmbedding(Base):
    """Current embedding for a decision. Regeneration replaces the row."""

    __tablename__ = "decision_embeddings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    decision_id: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    owner_id: Mapped[str] = mapped_column(String(36), index=True)
    vector: Mapped[list] = mapped_column(JSON)
    dimensions: Mapped[int] = mapped_column(Integer)
    model_version: Mapped[str] = mapped_column(String(200))
    content_hash: Mapped[str] = mapped_column(String(64))
    generated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class SimilarityIndexEntry(Base):
    """Owner-scoped vector entry. Written only by SimilarityIndex."""

    __tablename__ = "similarity_index"

    decision_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(36), index=True)
    vector: Mapped[list] = mapped_column(JSON)
    model_version: Mapped[str] = mapped_column(String(200))
    decision_created_at: Mapped[datetime] = mapped_column(DateTime)
    indexed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class AnalyticsSummary(Base):
    """Materialized aggregate for one scope, guarded by its watermark."""

    __tablename__ = "analytics_summaries"

    scope_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(36), index=True)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1)
    watermark: Mapped[int] = mapped_column(BigInteger, default=0)
    metrics: Mapped[dict] = mapped_column(JSON)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Insight(Base):
    __tablename__ = "insights"
    __table_args__ = (Index("ix_insights_owner_dedupe", "owner_id", "dedupe_key", "created_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    owner_id: Mapped[str] = mapped_column(String(36), index=True)
    kind: Mapped[str] = mapped_column(String(20))
    rule_id: Mapped[str] = mapped_column(String(64))
    scope: Mapped[str] = mapped_column(String(255))
    title: Mapped[str] = mapped_column(String(255))
    explanation: Mapped[str] = mapped_column(Text)
    explanation_source: Mapped[str] = mapped_column(String(20), default="template")
    evidence: Mapped[dict] = mapped_column(JSON)
    dedupe_key: Mapped[str] = mapped_column(String(400))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    dismissed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class Job(Base):
    """Durable task record. State transitions belong to JobQueue alone."""

    __tablename__ = "jobs"
    __table_args__ = (
        # At most one active job per idempotency key
        Index(
            "uq_jobs_active_idempotency_key",
            "idempotency_key",
            unique=True,
            sqlite_where=text("state IN ('pending', 'running', 'failed')"),
            postgresql_where=text("state IN ('pending', 'running', 'failed')"),
        ),
        Index("ix_jobs_ordering", "ordering_key", "state", "id"),
        Index("ix_jobs_claimable", "state", "scheduled_for"),
    )

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    task_type: Mapped[str] = mapped_column(String(64), index=True)
    payload: Mapped[dict] = mapped_column(JSON)
    idempotency_key: Mapped[str] = mapped_column(String(400))
    ordering_key: Mapped[str] = mapped_column(String(255))
    supersede_key: Mapped[Optional[str]] = mapped_column(String(400), nullable=True, index=True)
    state: Mapped[str] = mapped_column(String(20), default=JobState.PENDING.value)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    lease_token: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    worker_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    last_error: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class Notification(Base):
    """In-app notification written by InAppChannel."""

    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    type: Mapped[str] = mapped_column(String(50))  # "insight", "reminder"
    title: Mapped[str] = mapped_column(String(255))
    body: Mapped[str] = mapped_column(Text)
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    read: Mapped[bool] = mapped_column(default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class NotificationDelivery(Base):
    """One row per dedupe key; guards against delivering twice."""

    __tablename__ = "notification_deliveries"

    dedupe_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(36), index=True)
    channel: Mapped[str] = mapped_column(String(50))
    status: Mapped[str] = mapped_column(String(20))
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

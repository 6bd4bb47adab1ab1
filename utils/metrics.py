"""Prometheus metrics for the decision insights pipeline.

Metrics follow Prometheus naming conventions and include:
- Job lifecycle counters and execution latency
- Upstream capability call counters and latency
- Analytics cache hit/miss counters
- Insight and notification counters
"""

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
)

# Use a custom registry to avoid conflicts with default registry
REGISTRY = CollectorRegistry()

# Job queue
JOBS_ENQUEUED = Counter(
    "insights_jobs_enqueued_total",
    "Jobs created by enqueue",
    ["task_type"],
    registry=REGISTRY,
)

JOBS_DEDUPLICATED = Counter(
    "insights_jobs_deduplicated_total",
    "Enqueue calls resolved to an existing active job",
    ["task_type"],
    registry=REGISTRY,
)

JOBS_COMPLETED = Counter(
    "insights_jobs_completed_total",
    "Jobs that reached a final or retry state",
    ["task_type", "outcome"],  # outcome: succeeded, retry, dead_lettered
    registry=REGISTRY,
)

JOBS_DEAD_LETTERED = Counter(
    "insights_jobs_dead_lettered_total",
    "Jobs moved to the dead-letter state",
    ["task_type", "error_type"],
    registry=REGISTRY,
)

JOBS_RECOVERED = Counter(
    "insights_jobs_lease_recovered_total",
    "Running jobs requeued after their lease expired",
    registry=REGISTRY,
)

JOB_DURATION = Histogram(
    "insights_job_duration_seconds",
    "Job handler execution time in seconds",
    ["task_type"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
    registry=REGISTRY,
)

JOBS_BY_STATE = Gauge(
    "insights_jobs_by_state",
    "Jobs currently in each state",
    ["state"],
    registry=REGISTRY,
)

# Upstream capabilities
UPSTREAM_REQUESTS = Counter(
    "insights_upstream_requests_total",
    "Calls to the embedding and explanation capabilities",
    ["capability", "status"],
    registry=REGISTRY,
)

UPSTREAM_DURATION = Histogram(
    "insights_upstream_request_duration_seconds",
    "Upstream capability latency in seconds",
    ["capability"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
    registry=REGISTRY,
)

# Cache metrics
CACHE_HITS = Counter(
    "insights_cache_hits_total",
    "Total cache hits",
    ["cache_type"],
    registry=REGISTRY,
)

CACHE_MISSES = Counter(
    "insights_cache_misses_total",
    "Total cache misses",
    ["cache_type", "reason"],  # reason: absent, stale, error, disabled
    registry=REGISTRY,
)

# Insights and notifications
INSIGHTS_GENERATED = Counter(
    "insights_generated_total",
    "Insights persisted",
    ["rule_id", "explanation_source"],
    registry=REGISTRY,
)

INSIGHTS_SUPPRESSED = Counter(
    "insights_suppressed_total",
    "Insight candidates suppressed by the cooldown window",
    ["rule_id"],
    registry=REGISTRY,
)

NOTIFICATIONS_DELIVERED = Counter(
    "insights_notifications_total",
    "Notification dispatch results",
    ["channel", "status"],  # status: delivered, duplicate, failed
    registry=REGISTRY,
)

CONSISTENCY_VIOLATIONS = Counter(
    "insights_consistency_violations_total",
    "Detected consistency violations",
    ["component"],
    registry=REGISTRY,
)

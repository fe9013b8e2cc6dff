"""Prometheus metrics for the demand engine."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("demand_engine", "Product demand engine application info")
app_info.info({"version": "0.1.0", "name": "product-demand-engine"})

# Event metrics
demand_events_total = Counter(
    "demand_events_total",
    "Total number of demand events processed",
    ["event_type", "status"],
)

demand_weight_applied_total = Counter(
    "demand_weight_applied_total",
    "Total weighted score added to demand records",
    ["event_type"],
)

apply_event_duration_seconds = Histogram(
    "apply_event_duration_seconds",
    "Time spent applying a demand event",
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
)

concurrency_retries_total = Counter(
    "concurrency_retries_total",
    "Optimistic-write collisions retried by the store",
    ["reason"],
)

# Transition metrics
threshold_reached_total = Counter(
    "threshold_reached_total",
    "Records that crossed their funding threshold",
)

urgency_escalations_total = Counter(
    "urgency_escalations_total",
    "Urgency tier escalations",
    ["tier", "notified"],
)

status_transitions_total = Counter(
    "status_transitions_total",
    "Lifecycle status transitions",
    ["to_status", "kind"],
)

# Notification metrics
notifications_sent_total = Counter(
    "notifications_sent_total",
    "Notification deliveries by event kind",
    ["kind", "status"],
)

# Queue metrics
queue_size = Gauge(
    "demand_queue_size",
    "Number of records in the testing queue",
)

active_boosts = Gauge(
    "active_category_boosts",
    "Number of currently active category boosts",
)

scheduler_runs_total = Counter(
    "scheduler_runs_total",
    "Total number of scheduler runs",
    ["job_type", "status"],
)

scheduler_last_run_timestamp = Gauge(
    "scheduler_last_run_timestamp",
    "Timestamp of last scheduler run",
    ["job_type"],
)


def record_event_applied(event_type: str, weight: float, duration: float):
    """Record a successfully applied demand event."""
    demand_events_total.labels(event_type=event_type, status="applied").inc()
    demand_weight_applied_total.labels(event_type=event_type).inc(weight)
    apply_event_duration_seconds.observe(duration)


def record_event_skipped(event_type: str, reason: str):
    """Record an event acknowledged without mutation (duplicate, terminal record)."""
    demand_events_total.labels(event_type=event_type, status=reason).inc()


def record_event_failed(event_type: str, reason: str):
    """Record a rejected or failed demand event."""
    demand_events_total.labels(event_type=event_type, status=reason).inc()


def record_concurrency_retry(reason: str):
    """Record an optimistic-write collision."""
    concurrency_retries_total.labels(reason=reason).inc()


def record_threshold_reached():
    """Record a funding threshold crossing."""
    threshold_reached_total.inc()


def record_urgency_escalation(tier: str, notified: bool):
    """Record an upward urgency change."""
    urgency_escalations_total.labels(tier=tier, notified=str(notified).lower()).inc()


def record_status_transition(to_status: str, override: bool = False):
    """Record a lifecycle transition."""
    kind = "override" if override else "normal"
    status_transitions_total.labels(to_status=to_status, kind=kind).inc()


def record_notification(kind: str, success: bool):
    """Record a notification delivery attempt."""
    status = "success" if success else "error"
    notifications_sent_total.labels(kind=kind, status=status).inc()


def record_scheduler_run(job_type: str, success: bool):
    """Record a scheduler job run."""
    status = "success" if success else "error"
    scheduler_runs_total.labels(job_type=job_type, status=status).inc()
    scheduler_last_run_timestamp.labels(job_type=job_type).set(time.time())

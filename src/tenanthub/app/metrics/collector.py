"""Prometheus metrics definitions for the fleet control plane."""

from prometheus_client import Counter, Gauge, Histogram

# =============================================================================
# Histogram Buckets (optimized by latency category)
# =============================================================================

# MEDIUM: health probes, tenant API calls (5ms ~ 60s)
_BUCKETS_MEDIUM = (
    0.005, 0.01, 0.02, 0.04, 0.09,
    0.18, 0.36, 0.73, 1.5, 3,
    6.2, 12.7, 26, 53,
)  # 14 buckets

# SLOW: scheduler passes, instance start/stop (100ms ~ 180s)
_BUCKETS_SLOW = (
    0.1, 0.2, 0.39, 0.77, 1.5,
    3, 6, 12, 23, 46,
    91, 180,
)  # 12 buckets

# =============================================================================
# Lifecycle Metrics
# =============================================================================

LIFECYCLE_OPERATIONS_TOTAL = Counter(
    "tenanthub_lifecycle_operations_total",
    "Total lifecycle operations by result",
    ["operation", "result"],  # operation: start, stop, delete, exit
)

LIFECYCLE_OPERATION_DURATION = Histogram(
    "tenanthub_lifecycle_operation_duration_seconds",
    "Lifecycle operation duration",
    ["operation"],
    buckets=_BUCKETS_SLOW,
)

TRACKED_INSTANCES = Gauge(
    "tenanthub_tracked_instances",
    "Instances currently claimed in the process table",
)

# =============================================================================
# Wake Gateway Metrics
# =============================================================================

WAKE_ATTEMPTS_TOTAL = Counter(
    "tenanthub_wake_attempts_total",
    "Wake attempts triggered by not-running signals",
    ["result"],  # sent, failed
)

WAKE_EXHAUSTED_TOTAL = Counter(
    "tenanthub_wake_exhausted_total",
    "Requests that exhausted every wake attempt",
)

# =============================================================================
# Health / Backup / Alert Metrics
# =============================================================================

HEALTH_CHECKS_TOTAL = Counter(
    "tenanthub_health_checks_total",
    "Health checks by classification",
    ["status"],  # healthy, degraded, unhealthy
)

HEALTH_CHECK_LATENCY = Histogram(
    "tenanthub_health_check_latency_seconds",
    "Liveness probe latency",
    buckets=_BUCKETS_MEDIUM,
)

BACKUPS_TOTAL = Counter(
    "tenanthub_backups_total",
    "Scheduled backup executions by outcome",
    ["outcome"],  # completed, failed, skipped
)

ALERTS_CREATED_TOTAL = Counter(
    "tenanthub_alerts_created_total",
    "Alerts created",
    ["type", "severity"],
)

NOTIFICATION_FAILURES_TOTAL = Counter(
    "tenanthub_notification_failures_total",
    "Alert notification delivery failures",
    ["channel"],  # email, webhook
)

# =============================================================================
# Scheduler Metrics
# =============================================================================

SCHEDULER_TASK_DURATION = Histogram(
    "tenanthub_scheduler_task_duration_seconds",
    "Scheduler task duration",
    ["task"],
    buckets=_BUCKETS_SLOW,
)

SCHEDULER_INSTANCE_FAILURES_TOTAL = Counter(
    "tenanthub_scheduler_instance_failures_total",
    "Per-instance failures isolated during a scheduler pass",
    ["task"],
)

# =============================================================================
# Circuit Breaker Metrics
# =============================================================================

CIRCUIT_BREAKER_STATE = Gauge(
    "tenanthub_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=half_open, 2=open)",
    ["circuit"],
)

CIRCUIT_BREAKER_CALLS_TOTAL = Counter(
    "tenanthub_circuit_breaker_calls_total",
    "Total circuit breaker calls",
    ["circuit", "result"],  # result: success, failure
)

CIRCUIT_BREAKER_REJECTIONS_TOTAL = Counter(
    "tenanthub_circuit_breaker_rejections_total",
    "Total requests rejected due to open circuit",
    ["circuit"],
)


# =============================================================================
# Metric Initialization (ensure labels appear before first use)
# =============================================================================


def _init_metrics() -> None:
    """Initialize labeled metrics with zero values.

    Prometheus metrics with labels don't appear in output until first use.
    """
    CIRCUIT_BREAKER_STATE.labels(circuit="fleet-runner").set(0)  # 0 = closed
    CIRCUIT_BREAKER_CALLS_TOTAL.labels(circuit="fleet-runner", result="success")
    CIRCUIT_BREAKER_CALLS_TOTAL.labels(circuit="fleet-runner", result="failure")
    CIRCUIT_BREAKER_REJECTIONS_TOTAL.labels(circuit="fleet-runner")

    for status in ("healthy", "degraded", "unhealthy"):
        HEALTH_CHECKS_TOTAL.labels(status=status)
    for outcome in ("completed", "failed", "skipped"):
        BACKUPS_TOTAL.labels(outcome=outcome)
    for result in ("sent", "failed"):
        WAKE_ATTEMPTS_TOTAL.labels(result=result)
    for channel in ("email", "webhook"):
        NOTIFICATION_FAILURES_TOTAL.labels(channel=channel)
    for task in ("health", "backup", "cleanup", "idle"):
        SCHEDULER_INSTANCE_FAILURES_TOTAL.labels(task=task)


_init_metrics()

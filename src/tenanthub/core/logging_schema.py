"""Logging field schema - v1.0

Standard fields (added to all logs):
- schema_version: Log schema version
- service: Service name (tenanthub-control-plane)
- component: Component name (lifecycle, wake, health, backup, alerts, scheduler)
- event: Event type (instance_started, backup_failed, etc.)
- trace_id: Trace ID (one per scheduler run / API request)
- duration_ms: Duration in milliseconds

High cardinality fields (OK in logs, NOT in metric labels):
- instance_id: Instance ID
- subdomain: Instance subdomain
- alert_id: Alert ID
"""

from enum import StrEnum


class LogEvent(StrEnum):
    """Standard log event types.

    Use these event types in the 'event' extra field for consistent
    log filtering and analysis.
    """

    # Lifecycle events
    STATE_CHANGED = "state_changed"
    INSTANCE_STARTED = "instance_started"
    INSTANCE_STOPPED = "instance_stopped"
    INSTANCE_EXITED = "instance_exited"
    INSTANCE_ERROR = "instance_error"
    INSTANCE_DELETED = "instance_deleted"
    INSTANCES_RECOVERED = "instances_recovered"
    ADMIN_BOOTSTRAPPED = "admin_bootstrapped"
    PORT_ASSIGNED = "port_assigned"

    # Snapshot events
    SNAPSHOT_UPLOADED = "snapshot_uploaded"
    SNAPSHOT_DOWNLOADED = "snapshot_downloaded"
    SNAPSHOT_MISSING = "snapshot_missing"
    SNAPSHOT_DELETED = "snapshot_deleted"

    # Wake gateway events
    WAKE_TRIGGERED = "wake_triggered"
    WAKE_FAILED = "wake_failed"
    WAKE_EXHAUSTED = "wake_exhausted"

    # Health / backup / alert events
    HEALTH_CHECKED = "health_checked"
    BACKUP_COMPLETED = "backup_completed"
    BACKUP_FAILED = "backup_failed"
    BACKUP_SKIPPED = "backup_skipped"
    RETENTION_SWEEP = "retention_sweep"
    ALERT_CREATED = "alert_created"
    ALERT_RESOLVED = "alert_resolved"
    NOTIFICATION_FAILED = "notification_failed"

    # Scheduler events
    TASK_STARTED = "task_started"
    TASK_COMPLETE = "task_complete"
    TASK_FAILED = "task_failed"
    OPERATION_FAILED = "operation_failed"
    TELEMETRY_FAILED = "telemetry_failed"

    # Lifecycle (application)
    APP_STARTED = "app_started"
    APP_STOPPED = "app_stopped"

    # Infra events
    DB_CONNECTED = "db_connected"
    DB_ERROR = "db_error"
    S3_CONNECTED = "s3_connected"
    S3_BUCKET_CREATED = "s3_bucket_created"
    S3_ERROR = "s3_error"


class ErrorClass(StrEnum):
    """Error classification for structured error logging.

    Use these in the 'error_class' extra field to enable
    filtering by error type and setting up alerts.
    """

    TRANSIENT = "transient"  # Retryable (network timeout, temp failure)
    PERMANENT = "permanent"  # Not retryable (invalid input, not found)
    TIMEOUT = "timeout"  # Timeout error
    DATA_INTEGRITY = "data_integrity"  # Instance moved to error


class Component(StrEnum):
    """Component identifiers for log filtering."""

    LIFECYCLE = "lifecycle"
    PORTS = "ports"
    SNAPSHOT = "snapshot"
    WAKE = "wake"
    HEALTH = "health"
    BACKUP = "backup"
    ALERTS = "alerts"
    SCHEDULER = "scheduler"
    API = "api"

"""Instance fleet domain enums."""

from enum import StrEnum


class InstanceStatus(StrEnum):
    """Instance lifecycle status (written only by the registry)."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


# Statuses that hold a port
ACTIVE_STATUSES = frozenset({InstanceStatus.STARTING, InstanceStatus.RUNNING})

# Statuses with a live process behind the record
PROCESS_STATUSES = ACTIVE_STATUSES | {InstanceStatus.STOPPING}

# Statuses from which an instance may be deleted
DELETABLE_STATUSES = frozenset({InstanceStatus.STOPPED, InstanceStatus.ERROR})


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class BackupStatus(StrEnum):
    """backup_records.status values. Scheduled attempts are recorded once settled."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class BackupOutcome(StrEnum):
    """Result of one scheduled backup execution."""

    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"  # not running, or another pass claimed the slot


class AlertType(StrEnum):
    INSTANCE_DOWN = "instance_down"
    INSTANCE_DEGRADED = "instance_degraded"
    BACKUP_FAILED = "backup_failed"
    HIGH_ERROR_RATE = "high_error_rate"
    STORAGE_LIMIT = "storage_limit"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"


class AlertSeverity(StrEnum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class ChannelType(StrEnum):
    EMAIL = "email"
    WEBHOOK = "webhook"


class TaskKind(StrEnum):
    """Scheduler driver tasks."""

    HEALTH = "health"
    BACKUP = "backup"
    CLEANUP = "cleanup"
    ALL = "all"
    IDLE = "idle"

"""Domain models and enums."""

from tenanthub.core.domain.instance import (
    ACTIVE_STATUSES,
    DELETABLE_STATUSES,
    PROCESS_STATUSES,
    AlertSeverity,
    AlertType,
    BackupOutcome,
    BackupStatus,
    ChannelType,
    HealthStatus,
    InstanceStatus,
    TaskKind,
)

__all__ = [
    "AlertSeverity",
    "AlertType",
    "BackupOutcome",
    "BackupStatus",
    "ChannelType",
    "HealthStatus",
    "InstanceStatus",
    "TaskKind",
    "ACTIVE_STATUSES",
    "DELETABLE_STATUSES",
    "PROCESS_STATUSES",
]

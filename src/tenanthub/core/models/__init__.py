"""Database models for tenanthub.

Models are defined using SQLModel (SQLAlchemy + Pydantic).
"""

from tenanthub.core.models.instance import (
    Alert,
    AlertChannel,
    BackupRecord,
    BackupSchedule,
    HealthCheck,
    Instance,
    RequestMetric,
    as_utc,
    generate_ulid,
    utc_now,
)

__all__ = [
    "Alert",
    "AlertChannel",
    "BackupRecord",
    "BackupSchedule",
    "HealthCheck",
    "Instance",
    "RequestMetric",
    "as_utc",
    "generate_ulid",
    "utc_now",
]

"""Registry models.

Enum values are stored as strings; use core.domain enums in the service layer.
"""

from datetime import UTC, datetime

from sqlalchemy import JSON, BigInteger, Column, DateTime, ForeignKey, Index, String, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel
from ulid import ULID

from tenanthub.core.domain.instance import (
    AlertSeverity,
    AlertType,
    BackupStatus,
    ChannelType,
    HealthStatus,
    InstanceStatus,
)


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return str(ULID())


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _ts(nullable: bool = True, index: bool = False) -> Column:
    return Column(DateTime(timezone=True), nullable=nullable, index=index)


def _instance_fk() -> Column:
    return Column(
        String,
        ForeignKey("instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )


_JSON = JSON().with_variant(JSONB(), "postgresql")

_ACTIVE_PORT_WHERE = text("status IN ('starting', 'running')")


class Instance(SQLModel, table=True):
    """One tenant backend process and its metadata."""

    __tablename__ = "instances"

    id: str = Field(default_factory=generate_ulid, primary_key=True)
    owner_id: str = Field(index=True)
    name: str = Field(max_length=255)
    subdomain: str = Field(max_length=63, unique=True)
    status: InstanceStatus = Field(default=InstanceStatus.STOPPED, sa_type=String)
    port: int | None = None
    snapshot_key: str = Field(max_length=512)  # instances/{id}/pb_data.db
    admin_email: str | None = None
    admin_secret: str | None = None

    created_at: datetime = Field(default_factory=utc_now, sa_column=_ts(nullable=False))
    updated_at: datetime = Field(default_factory=utc_now, sa_column=_ts(nullable=False))
    last_started_at: datetime | None = Field(default=None, sa_column=_ts())
    last_stopped_at: datetime | None = Field(default=None, sa_column=_ts())
    last_activity_at: datetime | None = Field(default=None, sa_column=_ts())

    __table_args__ = (
        # At most one active instance per port
        Index(
            "uq_instances_active_port",
            "port",
            unique=True,
            postgresql_where=_ACTIVE_PORT_WHERE,
            sqlite_where=_ACTIVE_PORT_WHERE,
        ),
        Index("idx_instances_status", "status"),
    )


class HealthCheck(SQLModel, table=True):
    __tablename__ = "health_checks"

    id: str = Field(default_factory=generate_ulid, primary_key=True)
    instance_id: str = Field(sa_column=_instance_fk())
    status: HealthStatus = Field(sa_type=String)
    response_time_ms: int | None = None
    error_message: str | None = None
    checked_at: datetime = Field(default_factory=utc_now, sa_column=_ts(nullable=False, index=True))


class BackupSchedule(SQLModel, table=True):
    """Per-instance backup cadence. One row per instance."""

    __tablename__ = "backup_schedules"

    id: str = Field(default_factory=generate_ulid, primary_key=True)
    instance_id: str = Field(
        sa_column=Column(
            String,
            ForeignKey("instances.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        )
    )
    enabled: bool = Field(default=True)
    interval_hours: int = Field(default=6)
    retention_days: int = Field(default=30)
    last_backup_at: datetime | None = Field(default=None, sa_column=_ts())
    next_backup_at: datetime | None = Field(default=None, sa_column=_ts(index=True))
    created_at: datetime = Field(default_factory=utc_now, sa_column=_ts(nullable=False))
    updated_at: datetime = Field(default_factory=utc_now, sa_column=_ts(nullable=False))


class BackupRecord(SQLModel, table=True):
    __tablename__ = "backup_records"

    id: str = Field(default_factory=generate_ulid, primary_key=True)
    instance_id: str = Field(sa_column=_instance_fk())
    backup_name: str
    size_bytes: int | None = Field(default=None, sa_type=BigInteger)
    status: BackupStatus = Field(sa_type=String)
    error_message: str | None = None
    created_at: datetime = Field(default_factory=utc_now, sa_column=_ts(nullable=False, index=True))


class Alert(SQLModel, table=True):
    __tablename__ = "alerts"

    id: str = Field(default_factory=generate_ulid, primary_key=True)
    instance_id: str = Field(sa_column=_instance_fk())
    type: AlertType = Field(sa_type=String)
    severity: AlertSeverity = Field(sa_type=String)
    title: str
    message: str
    resolved: bool = Field(default=False)
    resolved_at: datetime | None = Field(default=None, sa_column=_ts())
    created_at: datetime = Field(default_factory=utc_now, sa_column=_ts(nullable=False))

    __table_args__ = (
        Index("idx_alerts_open", "instance_id", "type", "resolved"),
    )


class AlertChannel(SQLModel, table=True):
    """Notification target: {"email": ...} or {"webhook_url": ...}."""

    __tablename__ = "alert_channels"

    id: str = Field(default_factory=generate_ulid, primary_key=True)
    instance_id: str = Field(sa_column=_instance_fk())
    type: ChannelType = Field(sa_type=String)
    config: dict = Field(default_factory=dict, sa_column=Column(_JSON, nullable=False))
    enabled: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utc_now, sa_column=_ts(nullable=False))


class RequestMetric(SQLModel, table=True):
    """Per-request telemetry written by the wake gateway."""

    __tablename__ = "request_metrics"

    id: str = Field(default_factory=generate_ulid, primary_key=True)
    instance_id: str = Field(sa_column=_instance_fk())
    method: str = Field(max_length=10)
    path: str
    status_code: int
    duration_ms: int
    created_at: datetime = Field(default_factory=utc_now, sa_column=_ts(nullable=False, index=True))

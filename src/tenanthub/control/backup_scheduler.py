"""Backup Scheduler: periodic tenant backups through the wake gateway.

Each instance has at most one schedule. A due slot is claimed with a
compare-and-set on ``next_backup_at`` so two overlapping passes never back
up the same slot twice. A failed backup releases the slot; the next pass
retries it.
"""

import logging
from datetime import datetime, timedelta

from pydantic import BaseModel
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenanthub.app.config import BackupConfig
from tenanthub.app.metrics.collector import BACKUPS_TOTAL
from tenanthub.control.wake_gateway import WakeGateway
from tenanthub.core.domain import BackupOutcome, BackupStatus, InstanceStatus
from tenanthub.core.errors import InstanceNotFoundError
from tenanthub.core.logging_schema import Component, LogEvent
from tenanthub.core.models import BackupRecord, BackupSchedule, as_utc, utc_now
from tenanthub.services.instance_registry import InstanceRegistry

logger = logging.getLogger(__name__)


def backup_name(at: datetime) -> str:
    """auto-2024-05-01T12-30-00-000Z"""
    stamp = at.isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return "auto-" + stamp.replace(":", "-").replace(".", "-")


class ScheduleView(BaseModel):
    instance_id: str
    enabled: bool
    interval_hours: int
    retention_days: int
    last_backup_at: datetime | None
    next_backup_at: datetime | None


class BackupScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: InstanceRegistry,
        gateway: WakeGateway,
        settings: BackupConfig,
    ) -> None:
        self._session_factory = session_factory
        self._registry = registry
        self._gateway = gateway
        self._settings = settings

    # =========================================================================
    # Schedules
    # =========================================================================

    async def set_schedule(
        self,
        instance_id: str,
        interval_hours: int | None = None,
        retention_days: int | None = None,
        enabled: bool = True,
    ) -> ScheduleView:
        """Create or replace the schedule; the next backup is one interval away."""
        interval_hours = interval_hours or self._settings.default_interval_hours
        retention_days = retention_days or self._settings.default_retention_days
        now = utc_now()
        next_at = now + timedelta(hours=interval_hours)

        async with self._session_factory() as session:
            result = await session.execute(
                select(BackupSchedule).where(BackupSchedule.instance_id == instance_id)
            )
            schedule = result.scalar_one_or_none()
            if schedule is None:
                schedule = BackupSchedule(instance_id=instance_id, created_at=now)
                session.add(schedule)
            schedule.enabled = enabled
            schedule.interval_hours = interval_hours
            schedule.retention_days = retention_days
            schedule.next_backup_at = next_at
            schedule.updated_at = now
            await session.commit()
            await session.refresh(schedule)
            return _view(schedule)

    async def get_schedule(self, instance_id: str) -> ScheduleView | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(BackupSchedule).where(BackupSchedule.instance_id == instance_id)
            )
            schedule = result.scalar_one_or_none()
        return _view(schedule) if schedule else None

    async def get_instances_due_for_backup(self, now: datetime | None = None) -> list[str]:
        """Instances whose enabled schedule has ``next_backup_at <= now``."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(BackupSchedule.instance_id)
                .where(
                    BackupSchedule.enabled.is_(True),
                    BackupSchedule.next_backup_at <= (now or utc_now()),
                )
                .order_by(BackupSchedule.next_backup_at)
            )
            return list(result.scalars().all())

    async def list_enabled(self) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(BackupSchedule.instance_id).where(BackupSchedule.enabled.is_(True))
            )
            return list(result.scalars().all())

    # =========================================================================
    # Execution
    # =========================================================================

    async def _claim(self, instance_id: str, now: datetime) -> BackupSchedule | None:
        """Compare-and-set the due slot. None when not due or already claimed."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(BackupSchedule).where(BackupSchedule.instance_id == instance_id)
            )
            schedule = result.scalar_one_or_none()
            if schedule is None or not schedule.enabled or schedule.next_backup_at is None:
                return None
            seen = schedule.next_backup_at
            if as_utc(seen) > now:
                return None

            lease_until = now + timedelta(hours=schedule.interval_hours)
            claimed = await session.execute(
                update(BackupSchedule)
                .where(
                    BackupSchedule.instance_id == instance_id,
                    BackupSchedule.next_backup_at == seen,
                )
                .values(next_backup_at=lease_until, updated_at=now)
            )
            await session.commit()
            return schedule if claimed.rowcount == 1 else None

    async def execute_scheduled_backup(self, instance_id: str) -> BackupOutcome:
        """Run one due backup.

        Returns:
            SKIPPED when the instance is not running or the slot was claimed
            elsewhere, COMPLETED or FAILED otherwise
        """
        try:
            instance = await self._registry.get(instance_id)
        except InstanceNotFoundError:
            return self._skip(instance_id, "instance_missing")
        if instance.status != InstanceStatus.RUNNING:
            return self._skip(instance_id, "not_running")

        now = utc_now()
        schedule = await self._claim(instance_id, now)
        if schedule is None:
            return self._skip(instance_id, "not_claimed")

        name = backup_name(now)
        error: str | None = None
        try:
            resp = await self._gateway.authenticated_request(
                instance_id,
                path=self._settings.endpoint_path,
                method="POST",
                json={"name": name},
            )
            if resp.is_error:
                error = f"Backup failed: {resp.status_code} {resp.text[:500]}"
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"

        done_at = utc_now()
        async with self._session_factory() as session:
            session.add(
                BackupRecord(
                    instance_id=instance_id,
                    backup_name=name,
                    status=BackupStatus.FAILED if error else BackupStatus.COMPLETED,
                    error_message=error,
                    created_at=done_at,
                )
            )
            values: dict = {"updated_at": done_at}
            if error:
                values["next_backup_at"] = done_at
            else:
                values["last_backup_at"] = done_at
                values["next_backup_at"] = done_at + timedelta(hours=schedule.interval_hours)
            await session.execute(
                update(BackupSchedule)
                .where(BackupSchedule.instance_id == instance_id)
                .values(**values)
            )
            await session.commit()

        if error:
            BACKUPS_TOTAL.labels(outcome=BackupOutcome.FAILED.value).inc()
            logger.error(
                "Backup failed: %s",
                error,
                extra={
                    "event": LogEvent.BACKUP_FAILED,
                    "component": Component.BACKUP,
                    "instance_id": instance_id,
                    "backup_name": name,
                },
            )
            return BackupOutcome.FAILED

        BACKUPS_TOTAL.labels(outcome=BackupOutcome.COMPLETED.value).inc()
        logger.info(
            "Backup completed",
            extra={
                "event": LogEvent.BACKUP_COMPLETED,
                "component": Component.BACKUP,
                "instance_id": instance_id,
                "backup_name": name,
            },
        )
        return BackupOutcome.COMPLETED

    def _skip(self, instance_id: str, reason: str) -> BackupOutcome:
        BACKUPS_TOTAL.labels(outcome=BackupOutcome.SKIPPED.value).inc()
        logger.info(
            "Backup skipped (%s)",
            reason,
            extra={
                "event": LogEvent.BACKUP_SKIPPED,
                "component": Component.BACKUP,
                "instance_id": instance_id,
                "reason": reason,
            },
        )
        return BackupOutcome.SKIPPED

    # =========================================================================
    # Retention / history
    # =========================================================================

    async def cleanup_old_backups(self, instance_id: str, now: datetime | None = None) -> int:
        """Delete records strictly older than the schedule's retention window."""
        schedule = await self.get_schedule(instance_id)
        if schedule is None:
            return 0
        cutoff = (now or utc_now()) - timedelta(days=schedule.retention_days)
        async with self._session_factory() as session:
            result = await session.execute(
                delete(BackupRecord).where(
                    BackupRecord.instance_id == instance_id,
                    BackupRecord.created_at < cutoff,
                )
            )
            await session.commit()
            count = result.rowcount or 0
        if count:
            logger.info(
                "Pruned %d backup records",
                count,
                extra={
                    "event": LogEvent.RETENTION_SWEEP,
                    "component": Component.BACKUP,
                    "instance_id": instance_id,
                },
            )
        return count

    async def get_backup_history(self, instance_id: str, limit: int = 50) -> list[BackupRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(BackupRecord)
                .where(BackupRecord.instance_id == instance_id)
                .order_by(BackupRecord.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())


def _view(schedule: BackupSchedule) -> ScheduleView:
    return ScheduleView(
        instance_id=schedule.instance_id,
        enabled=schedule.enabled,
        interval_hours=schedule.interval_hours,
        retention_days=schedule.retention_days,
        last_backup_at=as_utc(schedule.last_backup_at),
        next_backup_at=as_utc(schedule.next_backup_at),
    )

"""Scheduler Driver: one entry point for the periodic fleet tasks.

    health   probe every running instance, alert on sustained failure
    backup   execute every due backup, alert on failure
    cleanup  prune health checks, request metrics and old backup records
    idle     stop instances idle past the window
    all      health -> backup -> cleanup

The driver knows nothing about what triggers it; the CLI and the HTTP
endpoint both call ``run(task)``. Per-instance failures are logged and
counted and never abort a pass.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable
from datetime import timedelta

from pydantic import BaseModel, Field

from tenanthub.app.config import Settings
from tenanthub.app.logging import trace_context
from tenanthub.app.metrics.collector import (
    SCHEDULER_INSTANCE_FAILURES_TOTAL,
    SCHEDULER_TASK_DURATION,
)
from tenanthub.control.alerting import AlertService
from tenanthub.control.backup_scheduler import BackupScheduler
from tenanthub.control.health_monitor import HealthMonitor
from tenanthub.control.lifecycle import LifecycleManager
from tenanthub.core.domain import (
    AlertSeverity,
    AlertType,
    BackupOutcome,
    HealthStatus,
    InstanceStatus,
    TaskKind,
)
from tenanthub.core.logging_schema import Component, LogEvent
from tenanthub.core.models import Instance, utc_now
from tenanthub.services.instance_registry import InstanceRegistry
from tenanthub.services.request_metrics import RequestMetricsRecorder

logger = logging.getLogger(__name__)

ALL_SEQUENCE = (TaskKind.HEALTH, TaskKind.BACKUP, TaskKind.CLEANUP)


class TaskReport(BaseModel):
    task: TaskKind
    processed: int = 0
    failed: int = 0
    alerts_created: int = 0
    alerts_resolved: int = 0
    counts: dict[str, int] = Field(default_factory=dict)
    duration_ms: int = 0
    subtasks: list["TaskReport"] = Field(default_factory=list)

    def bump(self, key: str, by: int = 1) -> None:
        self.counts[key] = self.counts.get(key, 0) + by


class SchedulerDriver:
    def __init__(
        self,
        registry: InstanceRegistry,
        lifecycle: LifecycleManager,
        health: HealthMonitor,
        backups: BackupScheduler,
        alerts: AlertService,
        request_metrics: RequestMetricsRecorder,
        settings: Settings,
    ) -> None:
        self._registry = registry
        self._lifecycle = lifecycle
        self._health = health
        self._backups = backups
        self._alerts = alerts
        self._request_metrics = request_metrics
        self._settings = settings

    async def run(self, task: TaskKind | str, trace_id: str | None = None) -> TaskReport:
        """Run one task kind and report what happened.

        Every record logged during the run carries the same ``trace_id``
        (generated when the trigger does not supply one).
        """
        task = TaskKind(task)
        with trace_context(task.value, trace_id):
            return await self._run_traced(task)

    async def _run_traced(self, task: TaskKind) -> TaskReport:
        started = time.monotonic()
        logger.info(
            "Scheduler task started",
            extra={"event": LogEvent.TASK_STARTED, "component": Component.SCHEDULER, "task": task.value},
        )
        try:
            if task == TaskKind.ALL:
                report = TaskReport(task=task)
                for sub in ALL_SEQUENCE:
                    sub_report = await self._run_one(sub)
                    report.subtasks.append(sub_report)
                    report.processed += sub_report.processed
                    report.failed += sub_report.failed
                    report.alerts_created += sub_report.alerts_created
                    report.alerts_resolved += sub_report.alerts_resolved
            else:
                report = await self._run_one(task)
        except Exception as exc:
            logger.error(
                "Scheduler task failed: %s",
                exc,
                extra={
                    "event": LogEvent.TASK_FAILED,
                    "component": Component.SCHEDULER,
                    "task": task.value,
                    "error_type": type(exc).__name__,
                },
            )
            raise
        finally:
            elapsed = time.monotonic() - started
            SCHEDULER_TASK_DURATION.labels(task=task.value).observe(elapsed)

        report.duration_ms = int(elapsed * 1000)
        logger.info(
            "Scheduler task complete",
            extra={
                "event": LogEvent.TASK_COMPLETE,
                "component": Component.SCHEDULER,
                "task": task.value,
                "processed": report.processed,
                "failed": report.failed,
                "alerts_created": report.alerts_created,
                "duration_ms": report.duration_ms,
            },
        )
        return report

    async def _run_one(self, task: TaskKind) -> TaskReport:
        started = time.monotonic()
        report = TaskReport(task=task)
        match task:
            case TaskKind.HEALTH:
                await self._health_pass(report)
            case TaskKind.BACKUP:
                await self._backup_pass(report)
            case TaskKind.CLEANUP:
                await self._cleanup_pass(report)
            case TaskKind.IDLE:
                await self._idle_pass(report)
            case _:
                raise ValueError(f"Unsupported task: {task}")
        report.duration_ms = int((time.monotonic() - started) * 1000)
        return report

    async def _fan_out(self, task: TaskKind, report: TaskReport, jobs: dict[str, Awaitable[None]]) -> None:
        """Run per-instance jobs with bounded concurrency, isolating failures."""
        semaphore = asyncio.Semaphore(max(1, self._settings.scheduler.concurrency))

        async def _safe(instance_id: str, job: Awaitable[None]) -> None:
            async with semaphore:
                try:
                    await job
                except Exception as exc:
                    report.failed += 1
                    SCHEDULER_INSTANCE_FAILURES_TOTAL.labels(task=task.value).inc()
                    logger.error(
                        "Scheduler %s failed for instance: %s",
                        task.value,
                        exc,
                        extra={
                            "event": LogEvent.OPERATION_FAILED,
                            "component": Component.SCHEDULER,
                            "task": task.value,
                            "instance_id": instance_id,
                            "error_type": type(exc).__name__,
                        },
                    )
                    return
                report.processed += 1

        await asyncio.gather(*(_safe(iid, job) for iid, job in jobs.items()))

    # =========================================================================
    # health
    # =========================================================================

    async def _health_pass(self, report: TaskReport) -> None:
        instances = await self._registry.list_by_status(InstanceStatus.RUNNING)
        await self._fan_out(
            TaskKind.HEALTH,
            report,
            {i.id: self._check_one(i, report) for i in instances},
        )

    async def _check_one(self, instance: Instance, report: TaskReport) -> None:
        endpoint = self._lifecycle.endpoint(instance.id)
        if endpoint is not None:
            base_url, headers = endpoint.base_url, endpoint.headers
        else:
            base_url = self._settings.health.url_template.format(subdomain=instance.subdomain)
            headers = None

        result = await self._health.check_instance_health(instance.id, base_url, headers)
        await self._health.record_health_check(result)
        report.bump(result.status.value)

        if result.status != HealthStatus.UNHEALTHY:
            report.alerts_resolved += await self._alerts.resolve_active(
                instance.id, [AlertType.INSTANCE_DOWN]
            )
            return

        if not await self._health.should_trigger_alert(instance.id):
            return
        if await self._alerts.has_active_alert(instance.id, AlertType.INSTANCE_DOWN):
            return
        await self._alerts.create_alert(
            instance.id,
            AlertType.INSTANCE_DOWN,
            AlertSeverity.CRITICAL,
            f"Instance {instance.subdomain} is down",
            f"The last {self._settings.health.alert_threshold} health checks failed"
            f" (latest: {result.error_message or 'unhealthy'}).",
        )
        report.alerts_created += 1

    # =========================================================================
    # backup
    # =========================================================================

    async def _backup_pass(self, report: TaskReport) -> None:
        due = await self._backups.get_instances_due_for_backup()
        await self._fan_out(
            TaskKind.BACKUP,
            report,
            {instance_id: self._backup_one(instance_id, report) for instance_id in due},
        )

    async def _backup_one(self, instance_id: str, report: TaskReport) -> None:
        outcome = await self._backups.execute_scheduled_backup(instance_id)
        report.bump(outcome.value)

        if outcome == BackupOutcome.COMPLETED:
            report.alerts_resolved += await self._alerts.resolve_active(
                instance_id, [AlertType.BACKUP_FAILED]
            )
        elif outcome == BackupOutcome.FAILED:
            if await self._alerts.has_active_alert(instance_id, AlertType.BACKUP_FAILED):
                return
            await self._alerts.create_alert(
                instance_id,
                AlertType.BACKUP_FAILED,
                AlertSeverity.WARNING,
                "Scheduled backup failed",
                "The scheduled backup could not be created; it will be retried on the next pass.",
            )
            report.alerts_created += 1

    # =========================================================================
    # cleanup / idle
    # =========================================================================

    async def _cleanup_pass(self, report: TaskReport) -> None:
        now = utc_now()
        report.bump(
            "health_checks",
            await self._health.cleanup(now - timedelta(days=self._settings.health.retention_days)),
        )
        report.bump(
            "request_metrics",
            await self._request_metrics.cleanup(
                now - timedelta(days=self._settings.scheduler.metrics_retention_days)
            ),
        )

        async def _prune(instance_id: str) -> None:
            report.bump("backup_records", await self._backups.cleanup_old_backups(instance_id, now))

        enabled = await self._backups.list_enabled()
        await self._fan_out(TaskKind.CLEANUP, report, {iid: _prune(iid) for iid in enabled})

    async def _idle_pass(self, report: TaskReport) -> None:
        paused = await self._lifecycle.pause_idle(self._settings.scheduler.idle_hours * 3600)
        report.processed += len(paused)
        report.bump("paused", len(paused))

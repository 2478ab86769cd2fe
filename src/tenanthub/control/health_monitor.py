"""Health Monitor: liveness probes and their history.

Classification:
- network error, timeout or non-2xx -> unhealthy
- 2xx slower than the degraded threshold -> degraded
- otherwise -> healthy
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta

import httpx
from pydantic import BaseModel
from sqlalchemy import case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenanthub.app.config import HealthConfig
from tenanthub.app.metrics.collector import HEALTH_CHECK_LATENCY, HEALTH_CHECKS_TOTAL
from tenanthub.core.domain import HealthStatus
from tenanthub.core.logging_schema import Component, LogEvent
from tenanthub.core.models import HealthCheck, as_utc, utc_now
from tenanthub.core.telemetry import best_effort

logger = logging.getLogger(__name__)


class HealthCheckResult(BaseModel):
    instance_id: str
    status: HealthStatus
    response_time_ms: int
    checked_at: datetime
    error_message: str | None = None


class HealthMetrics(BaseModel):
    """Aggregates over a window of health checks."""

    instance_id: str
    avg_response_time_ms: float
    error_rate: float  # % unhealthy
    uptime: float  # % healthy
    last_check_at: datetime


class HealthMonitor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        http_client: httpx.AsyncClient,
        settings: HealthConfig,
    ) -> None:
        self._session_factory = session_factory
        self._http = http_client
        self._settings = settings

    async def check_instance_health(
        self,
        instance_id: str,
        base_url: str,
        headers: dict[str, str] | None = None,
    ) -> HealthCheckResult:
        """Probe the liveness endpoint. Never raises."""
        checked_at = utc_now()
        started = time.monotonic()
        url = f"{base_url.rstrip('/')}/{self._settings.liveness_path.lstrip('/')}"
        error: str | None = None
        try:
            async with asyncio.timeout(self._settings.timeout):
                resp = await self._http.get(url, headers=headers, timeout=self._settings.timeout)
        except TimeoutError:
            error = f"Timed out after {self._settings.timeout:g}s"
        except httpx.HTTPError as exc:
            error = str(exc) or type(exc).__name__

        elapsed = time.monotonic() - started
        elapsed_ms = int(elapsed * 1000)
        if error is not None:
            status = HealthStatus.UNHEALTHY
        elif resp.is_success:
            status = (
                HealthStatus.DEGRADED
                if elapsed_ms > self._settings.degraded_threshold_ms
                else HealthStatus.HEALTHY
            )
        else:
            status = HealthStatus.UNHEALTHY
            error = f"HTTP {resp.status_code}"

        HEALTH_CHECKS_TOTAL.labels(status=status.value).inc()
        HEALTH_CHECK_LATENCY.observe(elapsed)
        logger.debug(
            "Health check %s",
            status,
            extra={
                "event": LogEvent.HEALTH_CHECKED,
                "component": Component.HEALTH,
                "instance_id": instance_id,
                "status": status.value,
                "duration_ms": elapsed_ms,
            },
        )
        return HealthCheckResult(
            instance_id=instance_id,
            status=status,
            response_time_ms=elapsed_ms,
            checked_at=checked_at,
            error_message=error,
        )

    async def _insert(self, result: HealthCheckResult) -> None:
        async with self._session_factory() as session:
            session.add(
                HealthCheck(
                    instance_id=result.instance_id,
                    status=result.status,
                    response_time_ms=result.response_time_ms,
                    error_message=result.error_message,
                    checked_at=result.checked_at,
                )
            )
            await session.commit()

    async def record_health_check(self, result: HealthCheckResult) -> bool:
        """Persist a result. Returns False (logged) when the write fails."""
        return await best_effort(
            self._insert(result), what="health_check", instance_id=result.instance_id
        )

    async def get_recent_health_checks(
        self, instance_id: str, limit: int = 50
    ) -> list[HealthCheckResult]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(HealthCheck)
                .where(HealthCheck.instance_id == instance_id)
                .order_by(HealthCheck.checked_at.desc())
                .limit(limit)
            )
            rows = result.scalars().all()
        return [
            HealthCheckResult(
                instance_id=row.instance_id,
                status=HealthStatus(row.status),
                response_time_ms=row.response_time_ms or 0,
                checked_at=as_utc(row.checked_at),
                error_message=row.error_message,
            )
            for row in rows
        ]

    async def should_trigger_alert(self, instance_id: str) -> bool:
        """True iff the latest ``alert_threshold`` checks exist and are all unhealthy."""
        threshold = self._settings.alert_threshold
        async with self._session_factory() as session:
            result = await session.execute(
                select(HealthCheck.status)
                .where(HealthCheck.instance_id == instance_id)
                .order_by(HealthCheck.checked_at.desc())
                .limit(threshold)
            )
            statuses = list(result.scalars().all())
        return len(statuses) >= threshold and all(
            s == HealthStatus.UNHEALTHY for s in statuses
        )

    async def get_health_metrics(
        self, instance_id: str, hours_back: float = 24
    ) -> HealthMetrics | None:
        since = utc_now() - timedelta(hours=hours_back)
        total = func.count(HealthCheck.id)
        stmt = select(
            func.avg(HealthCheck.response_time_ms),
            func.sum(case((HealthCheck.status == HealthStatus.UNHEALTHY.value, 1), else_=0)),
            func.sum(case((HealthCheck.status == HealthStatus.HEALTHY.value, 1), else_=0)),
            total,
            func.max(HealthCheck.checked_at),
        ).where(HealthCheck.instance_id == instance_id, HealthCheck.checked_at >= since)

        async with self._session_factory() as session:
            avg_ms, unhealthy, healthy, count, last = (await session.execute(stmt)).one()

        if not count or last is None:
            return None
        if isinstance(last, str):
            last = datetime.fromisoformat(last)
        return HealthMetrics(
            instance_id=instance_id,
            avg_response_time_ms=float(avg_ms or 0),
            error_rate=(unhealthy or 0) * 100.0 / count,
            uptime=(healthy or 0) * 100.0 / count,
            last_check_at=as_utc(last),
        )

    async def cleanup(self, older_than: datetime) -> int:
        """Delete checks recorded strictly before ``older_than``."""
        async with self._session_factory() as session:
            result = await session.execute(
                delete(HealthCheck).where(HealthCheck.checked_at < older_than)
            )
            await session.commit()
            count = result.rowcount or 0
        logger.info(
            "Pruned %d health checks",
            count,
            extra={"event": LogEvent.RETENTION_SWEEP, "component": Component.HEALTH},
        )
        return count

"""Alerting: persisted alerts with email/webhook fan-out.

Delivery is best-effort. A broken webhook is logged and counted; it never
fails the scheduler pass that raised the alert.
"""

import logging
from collections.abc import Iterable

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenanthub.app.metrics.collector import ALERTS_CREATED_TOTAL, NOTIFICATION_FAILURES_TOTAL
from tenanthub.core.domain import AlertSeverity, AlertType, ChannelType
from tenanthub.core.logging_schema import Component, LogEvent
from tenanthub.core.models import Alert, AlertChannel, utc_now

logger = logging.getLogger(__name__)

WEBHOOK_EVENT = "alert.created"


class AlertNotifier:
    """Delivers one alert to one channel."""

    def __init__(self, http_client: httpx.AsyncClient, webhook_timeout: float = 10.0) -> None:
        self._http = http_client
        self._timeout = webhook_timeout

    async def notify(self, channel: AlertChannel, alert: Alert) -> bool:
        """Returns False (logged) when delivery failed or was not possible."""
        try:
            if channel.type == ChannelType.WEBHOOK:
                return await self._send_webhook(channel.config.get("webhook_url"), alert)
            if channel.type == ChannelType.EMAIL:
                return self._send_email(channel.config.get("email"), alert)
        except Exception as exc:
            # Includes httpx.InvalidURL from a malformed webhook_url
            NOTIFICATION_FAILURES_TOTAL.labels(channel=str(channel.type)).inc()
            logger.error(
                "Alert delivery failed: %s",
                exc,
                extra={
                    "event": LogEvent.NOTIFICATION_FAILED,
                    "component": Component.ALERTS,
                    "alert_id": alert.id,
                    "channel_id": channel.id,
                    "channel": str(channel.type),
                    "error_type": type(exc).__name__,
                },
            )
        return False

    async def _send_webhook(self, url: str | None, alert: Alert) -> bool:
        if not url:
            return False
        resp = await self._http.post(
            url,
            json={"event": WEBHOOK_EVENT, "alert": alert.model_dump(mode="json")},
            timeout=self._timeout,
        )
        resp.raise_for_status()
        return True

    def _send_email(self, address: str | None, alert: Alert) -> bool:
        # No mail transport is wired; the intent is logged for operators.
        if not address:
            return False
        logger.info(
            "Would send email alert",
            extra={
                "component": Component.ALERTS,
                "alert_id": alert.id,
                "alert_type": str(alert.type),
                "email": address,
            },
        )
        return True


class AlertService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: AlertNotifier,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier

    # =========================================================================
    # Alerts
    # =========================================================================

    async def create_alert(
        self,
        instance_id: str,
        type: AlertType,
        severity: AlertSeverity,
        title: str,
        message: str,
    ) -> Alert:
        """Persist an alert, then notify every enabled channel."""
        alert = Alert(
            instance_id=instance_id,
            type=type,
            severity=severity,
            title=title,
            message=message,
            resolved=False,
            created_at=utc_now(),
        )
        async with self._session_factory() as session:
            session.add(alert)
            await session.commit()
            await session.refresh(alert)

        ALERTS_CREATED_TOTAL.labels(type=str(type), severity=str(severity)).inc()
        logger.warning(
            "Alert created: %s",
            title,
            extra={
                "event": LogEvent.ALERT_CREATED,
                "component": Component.ALERTS,
                "instance_id": instance_id,
                "alert_id": alert.id,
                "alert_type": str(type),
                "severity": str(severity),
            },
        )

        for channel in await self.get_alert_channels(instance_id):
            if channel.enabled:
                await self._notifier.notify(channel, alert)
        return alert

    async def resolve_alert(self, alert_id: str) -> bool:
        """Resolve an open alert. Returns False if it was already resolved or unknown."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(Alert)
                .where(Alert.id == alert_id, Alert.resolved.is_(False))
                .values(resolved=True, resolved_at=utc_now())
            )
            await session.commit()
            resolved = result.rowcount == 1
        if resolved:
            logger.info(
                "Alert resolved",
                extra={
                    "event": LogEvent.ALERT_RESOLVED,
                    "component": Component.ALERTS,
                    "alert_id": alert_id,
                },
            )
        return resolved

    async def resolve_active(self, instance_id: str, types: Iterable[AlertType]) -> int:
        """Resolve every open alert of ``types`` for the instance."""
        wanted = {str(t) for t in types}
        count = 0
        for alert in await self.get_active_alerts(instance_id):
            if alert.type in wanted and await self.resolve_alert(alert.id):
                count += 1
        return count

    async def get_active_alerts(self, instance_id: str) -> list[Alert]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Alert)
                .where(Alert.instance_id == instance_id, Alert.resolved.is_(False))
                .order_by(Alert.created_at.desc())
            )
            return list(result.scalars().all())

    async def get_alert_history(self, instance_id: str, limit: int = 100) -> list[Alert]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Alert)
                .where(Alert.instance_id == instance_id)
                .order_by(Alert.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def has_active_alert(self, instance_id: str, type: AlertType) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Alert.id)
                .where(
                    Alert.instance_id == instance_id,
                    Alert.type == type.value,
                    Alert.resolved.is_(False),
                )
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    # =========================================================================
    # Channels
    # =========================================================================

    async def add_alert_channel(
        self, instance_id: str, type: ChannelType, config: dict
    ) -> AlertChannel:
        channel = AlertChannel(
            instance_id=instance_id,
            type=type,
            config=config,
            enabled=True,
            created_at=utc_now(),
        )
        async with self._session_factory() as session:
            session.add(channel)
            await session.commit()
            await session.refresh(channel)
        return channel

    async def get_alert_channels(self, instance_id: str) -> list[AlertChannel]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AlertChannel)
                .where(AlertChannel.instance_id == instance_id)
                .order_by(AlertChannel.created_at)
            )
            return list(result.scalars().all())

    async def set_channel_enabled(self, channel_id: str, enabled: bool) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(AlertChannel)
                .where(AlertChannel.id == channel_id)
                .values(enabled=enabled)
            )
            await session.commit()
            return result.rowcount == 1

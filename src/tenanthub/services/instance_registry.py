"""Instance registry: durable instance metadata.

The registry is the only writer of ``status``, ``port`` and the lifecycle
timestamps. Status transitions are issued by the Lifecycle Manager; the
other components only read.
"""

import logging
import re
from datetime import datetime, timedelta

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenanthub.core.domain import ACTIVE_STATUSES, InstanceStatus
from tenanthub.core.errors import (
    InstanceNotFoundError,
    InvalidSubdomainError,
    SubdomainTakenError,
)
from tenanthub.core.logging_schema import Component, LogEvent
from tenanthub.core.models import (
    Alert,
    AlertChannel,
    BackupRecord,
    BackupSchedule,
    HealthCheck,
    Instance,
    RequestMetric,
    generate_ulid,
    utc_now,
)

logger = logging.getLogger(__name__)

SUBDOMAIN_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{1,61}[a-z0-9])?$")

_DEPENDENTS = (HealthCheck, BackupSchedule, BackupRecord, Alert, AlertChannel, RequestMetric)


def validate_subdomain(subdomain: str) -> str:
    """Normalize and check a subdomain label.

    Raises:
        InvalidSubdomainError: If the label is not DNS-safe
    """
    value = subdomain.strip().lower()
    if not SUBDOMAIN_RE.fullmatch(value):
        raise InvalidSubdomainError(f"Invalid subdomain: {subdomain!r}")
    return value


class InstanceRegistry:
    """Reads and writes the instances table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        snapshot_prefix: str = "instances",
    ) -> None:
        self._session_factory = session_factory
        self._snapshot_prefix = snapshot_prefix.strip("/")

    # =========================================================================
    # Queries
    # =========================================================================

    async def get(self, instance_id: str) -> Instance:
        async with self._session_factory() as session:
            instance = await session.get(Instance, instance_id)
        if instance is None:
            raise InstanceNotFoundError(f"Instance {instance_id} not found")
        return instance

    async def get_by_subdomain(self, subdomain: str) -> Instance | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Instance).where(Instance.subdomain == subdomain.lower())
            )
            return result.scalar_one_or_none()

    async def list_by_status(self, *statuses: InstanceStatus) -> list[Instance]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Instance)
                .where(Instance.status.in_([s.value for s in statuses]))
                .order_by(Instance.id)
            )
            return list(result.scalars().all())

    async def list_for_owner(self, owner_id: str) -> list[Instance]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Instance)
                .where(Instance.owner_id == owner_id)
                .order_by(Instance.created_at.desc())
            )
            return list(result.scalars().all())

    async def active_ports(self, exclude: str | None = None) -> set[int]:
        """Ports held by starting/running instances, optionally excluding one."""
        stmt = select(Instance.port).where(
            Instance.status.in_([s.value for s in ACTIVE_STATUSES]),
            Instance.port.is_not(None),
        )
        if exclude is not None:
            stmt = stmt.where(Instance.id != exclude)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return {port for port in result.scalars().all() if port is not None}

    async def find_idle(self, idle_seconds: float, now: datetime | None = None) -> list[Instance]:
        """Running instances with no activity (or start) inside the window."""
        cutoff = (now or utc_now()) - timedelta(seconds=idle_seconds)
        last_seen = func.coalesce(
            Instance.last_activity_at, Instance.last_started_at, Instance.created_at
        )
        async with self._session_factory() as session:
            result = await session.execute(
                select(Instance).where(
                    Instance.status == InstanceStatus.RUNNING.value,
                    last_seen < cutoff,
                )
            )
            return list(result.scalars().all())

    # =========================================================================
    # Creation / deletion
    # =========================================================================

    async def create_instance(
        self,
        owner_id: str,
        name: str,
        subdomain: str,
        admin_email: str | None = None,
        admin_secret: str | None = None,
    ) -> Instance:
        """Register a new instance in ``stopped``.

        Raises:
            InvalidSubdomainError: Subdomain is not a DNS label
            SubdomainTakenError: Subdomain already registered
        """
        subdomain = validate_subdomain(subdomain)
        if await self.get_by_subdomain(subdomain) is not None:
            raise SubdomainTakenError(f"Subdomain {subdomain!r} is already taken")

        instance_id = generate_ulid()
        now = utc_now()
        instance = Instance(
            id=instance_id,
            owner_id=owner_id,
            name=name,
            subdomain=subdomain,
            status=InstanceStatus.STOPPED,
            snapshot_key=f"{self._snapshot_prefix}/{instance_id}/pb_data.db",
            admin_email=admin_email,
            admin_secret=admin_secret,
            created_at=now,
            updated_at=now,
        )
        async with self._session_factory() as session:
            session.add(instance)
            try:
                await session.commit()
            except IntegrityError as exc:
                raise SubdomainTakenError(f"Subdomain {subdomain!r} is already taken") from exc
            await session.refresh(instance)
        return instance

    async def delete(self, instance_id: str) -> None:
        """Remove the instance row and every dependent row."""
        async with self._session_factory() as session:
            for model in _DEPENDENTS:
                await session.execute(delete(model).where(model.instance_id == instance_id))
            result = await session.execute(delete(Instance).where(Instance.id == instance_id))
            if result.rowcount == 0:
                await session.rollback()
                raise InstanceNotFoundError(f"Instance {instance_id} not found")
            await session.commit()

    # =========================================================================
    # Status transitions
    # =========================================================================

    async def _update(self, instance_id: str, **values: object) -> None:
        values.setdefault("updated_at", utc_now())
        async with self._session_factory() as session:
            result = await session.execute(
                update(Instance).where(Instance.id == instance_id).values(**values)
            )
            if result.rowcount == 0:
                raise InstanceNotFoundError(f"Instance {instance_id} not found")
            await session.commit()

        if "status" in values:
            logger.info(
                "Instance status -> %s",
                values["status"],
                extra={
                    "event": LogEvent.STATE_CHANGED,
                    "component": Component.LIFECYCLE,
                    "instance_id": instance_id,
                    "status": str(values["status"]),
                    "port": values.get("port"),
                },
            )

    async def mark_starting(self, instance_id: str) -> int | None:
        """Move to ``starting`` and release the port.

        Returns:
            The previously recorded port, offered back to the allocator
        """
        previous = (await self.get(instance_id)).port
        await self._update(instance_id, status=InstanceStatus.STARTING.value, port=None)
        return previous

    async def mark_running(self, instance_id: str, port: int) -> None:
        now = utc_now()
        await self._update(
            instance_id,
            status=InstanceStatus.RUNNING.value,
            port=port,
            last_started_at=now,
            last_activity_at=now,
        )

    async def mark_stopping(self, instance_id: str) -> None:
        await self._update(instance_id, status=InstanceStatus.STOPPING.value)

    async def mark_stopped(self, instance_id: str) -> None:
        await self._update(
            instance_id,
            status=InstanceStatus.STOPPED.value,
            port=None,
            last_stopped_at=utc_now(),
        )

    async def mark_error(self, instance_id: str) -> None:
        await self._update(instance_id, status=InstanceStatus.ERROR.value, port=None)

    async def claim_port(self, instance_id: str, port: int) -> None:
        """Persist the port assignment.

        Raises:
            IntegrityError: Another active instance holds ``port``
        """
        await self._update(instance_id, port=port)

    async def touch_activity(self, instance_id: str, at: datetime | None = None) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(Instance)
                .where(Instance.id == instance_id)
                .values(last_activity_at=at or utc_now())
            )
            await session.commit()

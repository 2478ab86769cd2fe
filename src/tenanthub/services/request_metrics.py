"""Per-request telemetry rows for tenant API calls."""

from datetime import datetime

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenanthub.core.models import RequestMetric


class RequestMetricsRecorder:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record(
        self,
        instance_id: str,
        method: str,
        path: str,
        status_code: int,
        duration_ms: int,
    ) -> None:
        async with self._session_factory() as session:
            session.add(
                RequestMetric(
                    instance_id=instance_id,
                    method=method.upper(),
                    path=path,
                    status_code=status_code,
                    duration_ms=duration_ms,
                )
            )
            await session.commit()

    async def cleanup(self, older_than: datetime) -> int:
        """Delete rows created strictly before ``older_than``."""
        async with self._session_factory() as session:
            result = await session.execute(
                delete(RequestMetric).where(RequestMetric.created_at < older_than)
            )
            await session.commit()
            return result.rowcount or 0

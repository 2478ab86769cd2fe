"""Best-effort telemetry writes.

Request metrics, activity timestamps and health-check rows must never fail
the operation that produced them. This is the only place where errors are
swallowed on purpose.
"""

import logging
from collections.abc import Awaitable

from tenanthub.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)


async def best_effort(awaitable: Awaitable[object], *, what: str, **fields: object) -> bool:
    """Await ``awaitable``; log and return False instead of raising."""
    try:
        await awaitable
    except Exception as exc:
        logger.warning(
            "Telemetry write failed (%s): %s",
            what,
            exc,
            extra={
                "event": LogEvent.TELEMETRY_FAILED,
                "telemetry": what,
                "error_type": type(exc).__name__,
                **fields,
            },
        )
        return False
    return True

"""Debounced activity tracking for idle detection.

Every proxied request would otherwise write ``last_activity_at``. The tracker
writes at most once per instance per ``debounce_seconds``.
"""

import logging
import time
from collections.abc import Callable

from tenanthub.services.instance_registry import InstanceRegistry

logger = logging.getLogger(__name__)


class ActivityTracker:
    def __init__(
        self,
        registry: InstanceRegistry,
        debounce_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._debounce = debounce_seconds
        self._clock = clock
        self._last: dict[str, float] = {}

    async def record(self, instance_id: str) -> bool:
        """Touch ``last_activity_at`` unless it was touched recently.

        Returns:
            True if a registry write happened
        """
        now = self._clock()
        last = self._last.get(instance_id)
        if last is not None and now - last < self._debounce:
            return False
        self._last[instance_id] = now
        await self._registry.touch_activity(instance_id)
        logger.debug("Activity recorded", extra={"instance_id": instance_id})
        return True

    def forget(self, instance_id: str) -> None:
        self._last.pop(instance_id, None)

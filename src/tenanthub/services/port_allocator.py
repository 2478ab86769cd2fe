"""Port allocation for local tenant processes.

A port is held by an instance in ``starting`` or ``running``. Allocation is
serialized by one lock and backed by the partial unique index on
``instances.port``, so two control-plane tasks never hand out the same port.
"""

import asyncio
import logging

from sqlalchemy.exc import IntegrityError

from tenanthub.core.errors import PortPoolExhaustedError
from tenanthub.core.logging_schema import Component, LogEvent
from tenanthub.services.instance_registry import InstanceRegistry

logger = logging.getLogger(__name__)


class PortAllocator:
    def __init__(
        self,
        registry: InstanceRegistry,
        base_port: int = 8090,
        pool_size: int = 1000,
    ) -> None:
        self._registry = registry
        self._base_port = base_port
        self._pool_size = pool_size
        self._lock = asyncio.Lock()

    async def ensure_port(self, instance_id: str, current_port: int | None = None) -> int:
        """Return a port no other active instance holds.

        ``current_port`` is re-claimed and kept when nobody else holds it.
        Otherwise the lowest free port from ``base_port`` is claimed. Every
        returned port is persisted before the lock is released.

        Raises:
            PortPoolExhaustedError: Every port in the pool is held
        """
        async with self._lock:
            held = await self._registry.active_ports(exclude=instance_id)
            candidates = range(self._base_port, self._base_port + self._pool_size)
            if current_port is not None and current_port not in held:
                candidates = [current_port, *candidates]

            for port in candidates:
                if port in held:
                    continue
                try:
                    await self._registry.claim_port(instance_id, port)
                except IntegrityError:
                    # Claimed by a writer outside this process
                    held.add(port)
                    continue
                logger.info(
                    "Port assigned",
                    extra={
                        "event": LogEvent.PORT_ASSIGNED,
                        "component": Component.PORTS,
                        "instance_id": instance_id,
                        "port": port,
                        "previous_port": current_port,
                    },
                )
                return port

        raise PortPoolExhaustedError(
            f"No free port in [{self._base_port}, {self._base_port + self._pool_size})"
        )

"""Process table: which instances this control plane is running.

``instance_id -> RuntimeHandle``. Insert and remove for one instance are
mutually exclusive through that instance's lock; the Lifecycle Manager holds
the lock around every start/stop/exit transition.
"""

import asyncio

from tenanthub.app.metrics.collector import TRACKED_INSTANCES
from tenanthub.core.interfaces import RuntimeHandle


class ProcessTable:
    def __init__(self) -> None:
        self._handles: dict[str, RuntimeHandle] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def lock(self, instance_id: str) -> asyncio.Lock:
        """Get or create the per-instance lock."""
        if instance_id not in self._locks:
            self._locks[instance_id] = asyncio.Lock()
        return self._locks[instance_id]

    def get(self, instance_id: str) -> RuntimeHandle | None:
        return self._handles.get(instance_id)

    def claim(self, handle: RuntimeHandle) -> None:
        """Track ``handle``. Claiming a tracked instance is a bug."""
        if handle.instance_id in self._handles:
            raise RuntimeError(f"Instance {handle.instance_id} already tracked")
        self._handles[handle.instance_id] = handle
        TRACKED_INSTANCES.set(len(self._handles))

    def release(self, instance_id: str) -> RuntimeHandle | None:
        handle = self._handles.pop(instance_id, None)
        TRACKED_INSTANCES.set(len(self._handles))
        return handle

    def forget(self, instance_id: str) -> None:
        """Drop the lock of a deleted instance."""
        self._locks.pop(instance_id, None)

    def instance_ids(self) -> list[str]:
        return list(self._handles)

    def __contains__(self, instance_id: object) -> bool:
        return instance_id in self._handles

    def __len__(self) -> int:
        return len(self._handles)

"""Instance runtime interface for the Lifecycle Manager.

The Lifecycle Manager reaches tenant processes only through this interface.
Two implementations ship:
- LocalProcessRuntime: spawns the binary as a child process (self-hosted)
- FleetRunnerRuntime: delegates to a remote fleet-runner API (managed)
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import BaseModel

# (handle, exit_code) -> None; invoked when a launched process exits
ExitCallback = Callable[["RuntimeHandle", int], Awaitable[None]]


class Endpoint(BaseModel):
    """How to reach a tenant API.

    Local: http://127.0.0.1:<port>
    Managed: <runner>/instances/<id>/proxy plus the runner API key header
    """

    base_url: str
    headers: dict[str, str] = {}

    model_config = {"frozen": True}

    def url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"


@dataclass
class RuntimeHandle:
    """A tracked tenant process.

    ``stop_requested`` is set by Lifecycle.stop before terminating so the
    exit watcher can tell a requested stop from a crash.
    """

    instance_id: str
    port: int
    pid: int | None = None
    process: asyncio.subprocess.Process | None = None
    watcher: asyncio.Task | None = None
    stop_requested: bool = False
    adopted: bool = False
    data_dir: Path | None = field(default=None, repr=False)


class InstanceRuntime(ABC):
    """Launches, stops and addresses tenant processes."""

    # True when the control plane owns the state file on local disk and must
    # restore/upload snapshots around the process lifetime.
    manages_local_state: bool = True

    @abstractmethod
    async def launch(
        self,
        instance_id: str,
        port: int,
        data_dir: Path,
        on_exit: ExitCallback,
        *,
        admin_email: str | None = None,
        admin_secret: str | None = None,
    ) -> RuntimeHandle:
        """Start the process serving ``data_dir`` on ``port``."""
        ...

    @abstractmethod
    async def terminate(self, handle: RuntimeHandle) -> None:
        """Ask the process to exit. Must tolerate an already-exited process."""
        ...

    @abstractmethod
    async def bootstrap_admin(self, handle: RuntimeHandle, email: str, secret: str) -> None:
        """Create the first admin account. Existing admin counts as success."""
        ...

    @abstractmethod
    async def adopt(self, instance_id: str) -> RuntimeHandle | None:
        """Return a handle for a process this control plane did not launch.

        Only meaningful when processes outlive the control plane (managed).
        """
        ...

    @abstractmethod
    async def remove(self, instance_id: str) -> None:
        """Drop any runtime-side copy of the instance (idempotent)."""
        ...

    @abstractmethod
    def endpoint(self, handle: RuntimeHandle) -> Endpoint:
        """Base URL and headers for the tenant API of a running handle."""
        ...

    async def close(self) -> None:
        """Release clients held by the runtime."""
        return None

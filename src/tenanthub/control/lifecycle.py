"""Lifecycle Manager: the instance state machine.

    stopped -> starting -> running -> stopping -> stopped
                  |           |           |
                  +---------> error <-----+

Start restores the snapshot (local runtime), allocates a port, launches the
process and bootstraps the tenant admin on first boot. Stop terminates the
process and uploads the state file. A process that exits without being asked
to is persisted and marked ``stopped`` (exit 0) or ``error``.

All transitions for one instance run under that instance's lock in the
ProcessTable, so a double start spawns once and a stop never races a start.

With a local runtime the tenant processes are children of exactly one
control-plane process. A record that says a process is alive but is not in
this process's table belongs to someone else and is never started over;
``recover`` takes over records left behind by a previous run of the owner.
"""

import asyncio
import logging
import shutil
import time
from collections.abc import Callable
from pathlib import Path

from tenanthub.app.config import RuntimeConfig
from tenanthub.app.metrics.collector import (
    LIFECYCLE_OPERATION_DURATION,
    LIFECYCLE_OPERATIONS_TOTAL,
)
from tenanthub.control.process_table import ProcessTable
from tenanthub.core.domain import DELETABLE_STATUSES, PROCESS_STATUSES, InstanceStatus
from tenanthub.core.errors import InvalidInstanceStateError, SnapshotTransferError
from tenanthub.core.interfaces import Endpoint, InstanceRuntime, RuntimeHandle, SnapshotStorage
from tenanthub.core.logging_schema import Component, ErrorClass, LogEvent
from tenanthub.services.instance_registry import InstanceRegistry
from tenanthub.services.port_allocator import PortAllocator

logger = logging.getLogger(__name__)


class LifecycleManager:
    def __init__(
        self,
        registry: InstanceRegistry,
        allocator: PortAllocator,
        snapshots: SnapshotStorage,
        runtime: InstanceRuntime,
        settings: RuntimeConfig,
        table: ProcessTable | None = None,
        on_delete: Callable[[str], None] | None = None,
    ) -> None:
        self._registry = registry
        self._allocator = allocator
        self._snapshots = snapshots
        self._runtime = runtime
        self._settings = settings
        self._table = table or ProcessTable()
        self._on_delete = on_delete
        # Stale records taken over by ``recover``
        self._recovered: set[str] = set()

    @property
    def table(self) -> ProcessTable:
        return self._table

    def _owned_elsewhere(self, instance_id: str, status: InstanceStatus) -> bool:
        # Remote runners are shared; only local children have a single owner
        return (
            self._runtime.manages_local_state
            and status in PROCESS_STATUSES
            and instance_id not in self._table
            and instance_id not in self._recovered
        )

    def _data_dir(self, instance_id: str) -> Path:
        return Path(self._settings.instances_dir) / instance_id

    def _state_path(self, instance_id: str) -> Path:
        return self._data_dir(instance_id) / self._settings.state_file

    # =========================================================================
    # start
    # =========================================================================

    async def start(self, instance_id: str) -> RuntimeHandle:
        """Start the instance, or return the handle if it is already tracked.

        Raises:
            InstanceNotFoundError: Unknown instance
            SnapshotTransferError, PortPoolExhaustedError, OSError, ...:
                The instance is left in ``error``
        """
        async with self._table.lock(instance_id):
            existing = self._table.get(instance_id)
            if existing is not None:
                return existing

            started = time.monotonic()
            instance = await self._registry.get(instance_id)
            if self._owned_elsewhere(instance_id, instance.status):
                raise InvalidInstanceStateError(
                    f"Instance {instance_id} is {instance.status} in another control-plane process"
                )
            self._recovered.discard(instance_id)
            previous_port = await self._registry.mark_starting(instance_id)

            try:
                first_boot = True
                restored = False
                if self._runtime.manages_local_state:
                    state_path = self._state_path(instance_id)
                    first_boot = not state_path.exists()
                    restored = await self._snapshots.download(instance_id, state_path)

                port = await self._allocator.ensure_port(instance_id, previous_port)
                handle = await self._runtime.launch(
                    instance_id,
                    port,
                    self._data_dir(instance_id),
                    self._on_exit,
                    admin_email=instance.admin_email,
                    admin_secret=instance.admin_secret,
                )
            except Exception as exc:
                await self._fail(instance_id, "start", exc)
                raise

            self._table.claim(handle)
            try:
                await asyncio.sleep(self._settings.settle_seconds)
                if first_boot and not restored and instance.admin_email and instance.admin_secret:
                    await self._bootstrap_admin(handle, instance.admin_email, instance.admin_secret)
                await self._registry.mark_running(instance_id, port)
            except Exception as exc:
                handle.stop_requested = True
                self._table.release(instance_id)
                try:
                    await self._runtime.terminate(handle)
                finally:
                    await self._fail(instance_id, "start", exc)
                raise

        LIFECYCLE_OPERATIONS_TOTAL.labels(operation="start", result="success").inc()
        LIFECYCLE_OPERATION_DURATION.labels(operation="start").observe(time.monotonic() - started)
        logger.info(
            "Instance running",
            extra={
                "event": LogEvent.INSTANCE_STARTED,
                "component": Component.LIFECYCLE,
                "instance_id": instance_id,
                "port": port,
                "first_boot": first_boot,
                "restored": restored,
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return handle

    async def _bootstrap_admin(self, handle: RuntimeHandle, email: str, secret: str) -> None:
        # A missing admin is recoverable by hand; it never fails the start.
        try:
            await self._runtime.bootstrap_admin(handle, email, secret)
        except Exception as exc:
            logger.warning(
                "Admin bootstrap failed: %s",
                exc,
                extra={
                    "event": LogEvent.OPERATION_FAILED,
                    "component": Component.LIFECYCLE,
                    "instance_id": handle.instance_id,
                    "error_type": type(exc).__name__,
                },
            )

    # =========================================================================
    # stop / exit
    # =========================================================================

    async def stop(self, instance_id: str) -> bool:
        """Stop a tracked instance and upload its state.

        Returns:
            False when nothing was running (no-op)

        Raises:
            SnapshotTransferError: Upload failed; the instance is in ``error``
        """
        async with self._table.lock(instance_id):
            handle = self._table.get(instance_id)
            if handle is None:
                handle = await self._runtime.adopt(instance_id)
                if handle is None:
                    logger.debug(
                        "Stop ignored, instance not running",
                        extra={"component": Component.LIFECYCLE, "instance_id": instance_id},
                    )
                    return False
                self._table.claim(handle)

            started = time.monotonic()
            await self._registry.mark_stopping(instance_id)
            handle.stop_requested = True
            try:
                await self._runtime.terminate(handle)
                await asyncio.sleep(self._settings.stop_grace_seconds)
                await self._persist(instance_id)
            except Exception as exc:
                self._table.release(instance_id)
                await self._fail(instance_id, "stop", exc)
                raise

            self._table.release(instance_id)
            await self._registry.mark_stopped(instance_id)

        LIFECYCLE_OPERATIONS_TOTAL.labels(operation="stop", result="success").inc()
        LIFECYCLE_OPERATION_DURATION.labels(operation="stop").observe(time.monotonic() - started)
        logger.info(
            "Instance stopped",
            extra={
                "event": LogEvent.INSTANCE_STOPPED,
                "component": Component.LIFECYCLE,
                "instance_id": instance_id,
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return True

    async def _on_exit(self, handle: RuntimeHandle, exit_code: int) -> None:
        """Handle a process exit that ``stop`` did not ask for."""
        instance_id = handle.instance_id
        async with self._table.lock(instance_id):
            if handle.stop_requested or self._table.get(instance_id) is not handle:
                return
            self._table.release(instance_id)

            persisted = True
            try:
                await self._persist(instance_id)
            except SnapshotTransferError:
                persisted = False

            if exit_code == 0 and persisted:
                await self._registry.mark_stopped(instance_id)
                result = "stopped"
            else:
                await self._registry.mark_error(instance_id)
                result = "error"

        LIFECYCLE_OPERATIONS_TOTAL.labels(operation="exit", result=result).inc()
        log = logger.info if result == "stopped" else logger.error
        log(
            "Process exited unexpectedly (code %d)",
            exit_code,
            extra={
                "event": LogEvent.INSTANCE_EXITED,
                "component": Component.LIFECYCLE,
                "instance_id": instance_id,
                "exit_code": exit_code,
                "snapshot_persisted": persisted,
                "error_class": ErrorClass.DATA_INTEGRITY if result == "error" else None,
            },
        )

    async def _persist(self, instance_id: str) -> None:
        """Upload the local state file, if this runtime keeps one."""
        if not self._runtime.manages_local_state:
            return
        state_path = self._state_path(instance_id)
        if state_path.exists():
            await self._snapshots.upload(instance_id, state_path)

    async def _fail(self, instance_id: str, operation: str, exc: Exception) -> None:
        LIFECYCLE_OPERATIONS_TOTAL.labels(operation=operation, result="error").inc()
        logger.error(
            "Instance %s failed: %s",
            operation,
            exc,
            extra={
                "event": LogEvent.INSTANCE_ERROR,
                "component": Component.LIFECYCLE,
                "error_class": ErrorClass.DATA_INTEGRITY,
                "instance_id": instance_id,
                "error_type": type(exc).__name__,
            },
        )
        await self._registry.mark_error(instance_id)

    # =========================================================================
    # wake / delete / idle
    # =========================================================================

    async def wake(self, instance_id: str) -> bool:
        """Start for the wake gateway. Never raises.

        Instances in ``error`` are not woken; they need an explicit start.
        """
        try:
            instance = await self._registry.get(instance_id)
            if instance.status == InstanceStatus.ERROR:
                logger.warning(
                    "Not waking instance in error",
                    extra={
                        "event": LogEvent.WAKE_FAILED,
                        "component": Component.WAKE,
                        "instance_id": instance_id,
                    },
                )
                return False
            await self.start(instance_id)
        except Exception as exc:
            logger.error(
                "Wake failed: %s",
                exc,
                extra={
                    "event": LogEvent.WAKE_FAILED,
                    "component": Component.WAKE,
                    "instance_id": instance_id,
                    "error_type": type(exc).__name__,
                },
            )
            return False
        return True

    async def delete(self, instance_id: str) -> None:
        """Remove a stopped instance everywhere.

        Raises:
            InvalidInstanceStateError: Instance is not stopped or in error
        """
        async with self._table.lock(instance_id):
            instance = await self._registry.get(instance_id)
            if instance.status not in DELETABLE_STATUSES or instance_id in self._table:
                raise InvalidInstanceStateError(
                    f"Instance {instance_id} is {instance.status}; stop it first"
                )

            await self._runtime.remove(instance_id)
            await self._snapshots.delete(instance_id)
            data_dir = self._data_dir(instance_id)
            if data_dir.exists():
                await asyncio.to_thread(shutil.rmtree, data_dir)
            await self._registry.delete(instance_id)

        self._table.forget(instance_id)
        self._recovered.discard(instance_id)
        if self._on_delete is not None:
            self._on_delete(instance_id)
        LIFECYCLE_OPERATIONS_TOTAL.labels(operation="delete", result="success").inc()
        logger.info(
            "Instance deleted",
            extra={
                "event": LogEvent.INSTANCE_DELETED,
                "component": Component.LIFECYCLE,
                "instance_id": instance_id,
            },
        )

    async def pause_idle(self, idle_seconds: float) -> list[str]:
        """Stop running instances with no activity inside the window.

        A recovered ``running`` record with no process behind it is marked
        stopped. Instances owned by another process are left alone.
        """
        paused: list[str] = []
        for instance in await self._registry.find_idle(idle_seconds):
            if self._owned_elsewhere(instance.id, instance.status):
                continue
            try:
                if not await self.stop(instance.id):
                    await self._registry.mark_stopped(instance.id)
                    self._recovered.discard(instance.id)
            except Exception as exc:
                logger.error(
                    "Idle pause failed: %s",
                    exc,
                    extra={
                        "event": LogEvent.OPERATION_FAILED,
                        "component": Component.LIFECYCLE,
                        "instance_id": instance.id,
                        "error_type": type(exc).__name__,
                    },
                )
                continue
            paused.append(instance.id)
        return paused

    async def recover(self) -> list[str]:
        """Take over records whose process died with a previous run.

        Only the process that owns the local runtime calls this, once, at
        startup. Recovered instances can be started (keeping their last port)
        or paused by this process.
        """
        stale = [
            instance.id
            for instance in await self._registry.list_by_status(*PROCESS_STATUSES)
            if instance.id not in self._table
        ]
        self._recovered.update(stale)
        if stale:
            logger.warning(
                "Recovered %d stale instance records",
                len(stale),
                extra={
                    "event": LogEvent.INSTANCES_RECOVERED,
                    "component": Component.LIFECYCLE,
                    "instance_ids": stale,
                },
            )
        return stale

    # =========================================================================
    # routing / shutdown
    # =========================================================================

    def endpoint(self, instance_id: str) -> Endpoint | None:
        """Where to reach the tenant API, or None when nothing is tracked."""
        handle = self._table.get(instance_id)
        if handle is None:
            return None
        return self._runtime.endpoint(handle)

    async def shutdown(self, stop_instances: bool = True) -> None:
        """Stop every tracked instance and close the runtime.

        With ``stop_instances=False`` tracked handles are dropped and the
        processes keep running (remote runners own their lifetime).
        """
        instance_ids = self._table.instance_ids() if stop_instances else []
        for instance_id in instance_ids:
            try:
                await self.stop(instance_id)
            except Exception as exc:
                logger.error(
                    "Shutdown stop failed: %s",
                    exc,
                    extra={
                        "event": LogEvent.OPERATION_FAILED,
                        "component": Component.LIFECYCLE,
                        "instance_id": instance_id,
                    },
                )
        await self._runtime.close()

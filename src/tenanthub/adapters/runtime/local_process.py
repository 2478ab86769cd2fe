"""Local process runtime.

Spawns one tenant binary per instance as a child of the control plane:

    <binary> serve --http <host>:<port> --dir <instances_dir>/<id>

A watcher task drains the child's output and reports the exit code back to
the Lifecycle Manager.
"""

import asyncio
import contextlib
import logging
from pathlib import Path

import httpx

from tenanthub.core.interfaces import Endpoint, ExitCallback, InstanceRuntime, RuntimeHandle
from tenanthub.core.logging_schema import Component, LogEvent

logger = logging.getLogger(__name__)


class LocalProcessRuntime(InstanceRuntime):
    """Runs tenant processes on this host."""

    manages_local_state = True

    def __init__(
        self,
        binary_path: str,
        bind_host: str = "127.0.0.1",
        http_client: httpx.AsyncClient | None = None,
        admin_timeout: float = 10.0,
        kill_after: float = 10.0,
    ) -> None:
        self._binary_path = binary_path
        self._bind_host = bind_host
        self._admin_timeout = admin_timeout
        self._kill_after = kill_after
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=admin_timeout)

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
        data_dir.mkdir(parents=True, exist_ok=True)
        process = await asyncio.create_subprocess_exec(
            self._binary_path,
            "serve",
            "--http",
            f"{self._bind_host}:{port}",
            "--dir",
            str(data_dir),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        handle = RuntimeHandle(
            instance_id=instance_id,
            port=port,
            pid=process.pid,
            process=process,
            data_dir=data_dir,
        )
        handle.watcher = asyncio.create_task(
            self._watch(handle, on_exit), name=f"watch-{instance_id}"
        )
        logger.info(
            "Process spawned",
            extra={
                "event": LogEvent.INSTANCE_STARTED,
                "component": Component.LIFECYCLE,
                "instance_id": instance_id,
                "port": port,
                "pid": process.pid,
            },
        )
        return handle

    async def _watch(self, handle: RuntimeHandle, on_exit: ExitCallback) -> None:
        process = handle.process
        if process is None:
            return
        if process.stdout is not None:
            async for raw in process.stdout:
                logger.debug(
                    "[%s] %s",
                    handle.instance_id,
                    raw.decode(errors="replace").rstrip(),
                    extra={"instance_id": handle.instance_id},
                )
        code = await process.wait()
        try:
            await on_exit(handle, code)
        except Exception:
            logger.exception(
                "Exit handler failed",
                extra={
                    "event": LogEvent.OPERATION_FAILED,
                    "component": Component.LIFECYCLE,
                    "instance_id": handle.instance_id,
                    "exit_code": code,
                },
            )

    async def terminate(self, handle: RuntimeHandle) -> None:
        """SIGTERM, then SIGKILL after ``kill_after`` seconds."""
        process = handle.process
        if process is None or process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=self._kill_after)
        except TimeoutError:
            logger.warning(
                "Process ignored SIGTERM, killing",
                extra={"component": Component.LIFECYCLE, "instance_id": handle.instance_id},
            )
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()

    async def bootstrap_admin(self, handle: RuntimeHandle, email: str, secret: str) -> None:
        """Create the first admin. HTTP 400 means it already exists."""
        resp = await self._http.post(
            self.endpoint(handle).url("api/admins"),
            json={"email": email, "password": secret, "passwordConfirm": secret},
            timeout=self._admin_timeout,
        )
        if resp.status_code == 400:
            logger.info(
                "Admin already exists",
                extra={"component": Component.LIFECYCLE, "instance_id": handle.instance_id},
            )
            return
        resp.raise_for_status()
        logger.info(
            "Admin bootstrapped",
            extra={
                "event": LogEvent.ADMIN_BOOTSTRAPPED,
                "component": Component.LIFECYCLE,
                "instance_id": handle.instance_id,
            },
        )

    async def adopt(self, instance_id: str) -> RuntimeHandle | None:
        # Children die with the control plane; nothing survives to adopt.
        return None

    async def remove(self, instance_id: str) -> None:
        return None

    def endpoint(self, handle: RuntimeHandle) -> Endpoint:
        return Endpoint(base_url=f"http://{self._bind_host}:{handle.port}")

    async def close(self) -> None:
        if self._owns_client:
            await self._http.aclose()

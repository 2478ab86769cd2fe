"""Fleet-runner HTTP client (managed runtime).

The runner owns the tenant processes and their disks. The control plane only
asks it to start, stop or delete an instance and reaches tenant APIs through
its proxy at /instances/{id}/proxy.
"""

import logging
from pathlib import Path
from typing import Any, Literal

import httpx

from tenanthub.app.config import FleetRunnerConfig
from tenanthub.core.interfaces import Endpoint, ExitCallback, InstanceRuntime, RuntimeHandle
from tenanthub.core.logging_schema import Component, LogEvent
from tenanthub.core.retryable import with_retry

logger = logging.getLogger(__name__)

CIRCUIT_NAME = "fleet-runner"


class FleetRunnerRuntime(InstanceRuntime):
    """Delegates process management to a remote fleet-runner."""

    manages_local_state = False

    def __init__(
        self,
        config: FleetRunnerConfig,
        http_client: httpx.AsyncClient | None = None,
        max_retries: int = 2,
        retry_base_delay: float = 0.5,
    ) -> None:
        self._base_url = config.normalized_url
        self._api_key = config.api_key
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._client = http_client or httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._get_headers(),
            timeout=config.timeout,
        )

    def _get_headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "X-API-Key": self._api_key}

    async def _request(
        self,
        method: Literal["get", "post", "delete"],
        path: str,
        *,
        tolerate: frozenset[int] = frozenset(),
        **kwargs: Any,
    ) -> httpx.Response:
        """Call the runner with retry and the shared circuit breaker.

        Statuses in ``tolerate`` are returned for the caller to inspect;
        every other non-2xx raises HTTPStatusError.
        """

        async def _call() -> httpx.Response:
            resp = await self._client.request(
                method.upper(), path, headers=self._get_headers(), **kwargs
            )
            if resp.status_code not in tolerate:
                resp.raise_for_status()
            return resp

        return await with_retry(
            _call,
            max_retries=self._max_retries,
            base_delay=self._retry_base_delay,
            circuit_breaker=CIRCUIT_NAME,
        )

    @staticmethod
    def _error_text(resp: httpx.Response) -> str:
        try:
            return str(resp.json().get("error", ""))
        except ValueError:
            return resp.text

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
        body: dict[str, Any] = {"port": port}
        if admin_email and admin_secret:
            body["adminEmail"] = admin_email
            body["adminPassword"] = admin_secret

        resp = await self._request(
            "post", f"/instances/{instance_id}/start", json=body, tolerate=frozenset({400})
        )
        if resp.status_code == 400:
            # Already running on the runner: adopt its port
            if "already running" not in self._error_text(resp).lower():
                resp.raise_for_status()
            adopted = await self.adopt(instance_id)
            if adopted is not None:
                return adopted

        data = resp.json() if resp.status_code < 300 else {}
        logger.info(
            "Start sent to fleet-runner",
            extra={
                "event": LogEvent.INSTANCE_STARTED,
                "component": Component.LIFECYCLE,
                "instance_id": instance_id,
                "port": port,
            },
        )
        return RuntimeHandle(instance_id=instance_id, port=port, pid=data.get("pid"))

    async def terminate(self, handle: RuntimeHandle) -> None:
        # 404 = not running on the runner
        await self._request(
            "post", f"/instances/{handle.instance_id}/stop", tolerate=frozenset({404})
        )

    async def bootstrap_admin(self, handle: RuntimeHandle, email: str, secret: str) -> None:
        # The runner creates the admin from the credentials sent with start.
        return None

    async def adopt(self, instance_id: str) -> RuntimeHandle | None:
        resp = await self._request(
            "get", f"/instances/{instance_id}/status", tolerate=frozenset({404})
        )
        if resp.status_code == 404:
            return None
        data = resp.json()
        if data.get("status") != "running":
            return None
        return RuntimeHandle(
            instance_id=instance_id,
            port=int(data.get("port") or 0),
            pid=data.get("pid"),
            adopted=True,
        )

    async def remove(self, instance_id: str) -> None:
        await self._request("delete", f"/instances/{instance_id}", tolerate=frozenset({404}))
        logger.info(
            "Instance removed from fleet-runner",
            extra={"component": Component.LIFECYCLE, "instance_id": instance_id},
        )

    def endpoint(self, handle: RuntimeHandle) -> Endpoint:
        return Endpoint(
            base_url=f"{self._base_url}/instances/{handle.instance_id}/proxy",
            headers={"X-API-Key": self._api_key},
        )

    async def close(self) -> None:
        if not self._client.is_closed:
            await self._client.aclose()

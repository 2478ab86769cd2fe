"""Wake-On-Demand Gateway.

Authenticated calls to a tenant API that transparently start a stopped
instance. A "not running" signal (no endpoint, connection failure, HTTP 503,
or the runner's 404 "Instance not running") triggers a wake and a linear
backoff; after the last attempt the caller gets InstanceUnavailableError,
never the transport error.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from pydantic import BaseModel

from tenanthub.app.config import WakeConfig
from tenanthub.app.metrics.collector import WAKE_ATTEMPTS_TOTAL, WAKE_EXHAUSTED_TOTAL
from tenanthub.control.activity import ActivityTracker
from tenanthub.control.lifecycle import LifecycleManager
from tenanthub.core.errors import AdminAuthError, InstanceUnavailableError
from tenanthub.core.interfaces import Endpoint
from tenanthub.core.logging_schema import Component, ErrorClass, LogEvent
from tenanthub.core.telemetry import best_effort
from tenanthub.services.instance_registry import InstanceRegistry
from tenanthub.services.request_metrics import RequestMetricsRecorder

logger = logging.getLogger(__name__)

AUTH_PATH = "api/admins/auth-with-password"


class AdminCredentials(BaseModel):
    email: str
    password: str

    model_config = {"frozen": True}


class _NotRunning(Exception):
    """Internal: the attempt saw a not-running signal."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class WakeGateway:
    def __init__(
        self,
        lifecycle: LifecycleManager,
        registry: InstanceRegistry,
        settings: WakeConfig,
        http_client: httpx.AsyncClient,
        metrics: RequestMetricsRecorder | None = None,
        activity: ActivityTracker | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._lifecycle = lifecycle
        self._registry = registry
        self._settings = settings
        self._http = http_client
        self._metrics = metrics
        self._activity = activity
        self._sleep = sleep

    async def _credentials(self, instance_id: str) -> AdminCredentials:
        instance = await self._registry.get(instance_id)
        if not instance.admin_email or not instance.admin_secret:
            raise AdminAuthError(f"Instance {instance_id} has no admin credentials")
        return AdminCredentials(email=instance.admin_email, password=instance.admin_secret)

    def _is_not_running(self, resp: httpx.Response) -> bool:
        if resp.status_code == 503:
            return True
        return resp.status_code == 404 and self._settings.not_running_marker in resp.text

    async def _authenticate(self, endpoint: Endpoint, credentials: AdminCredentials) -> str:
        resp = await self._http.post(
            endpoint.url(AUTH_PATH),
            json={"identity": credentials.email, "password": credentials.password},
            headers=endpoint.headers,
            timeout=self._settings.request_timeout,
        )
        if self._is_not_running(resp):
            raise _NotRunning(f"auth_http_{resp.status_code}")
        if resp.is_error:
            raise AdminAuthError(
                f"Admin authentication rejected ({resp.status_code})",
                upstream_status=resp.status_code,
            )
        try:
            token = resp.json().get("token")
        except ValueError:
            token = None
        if not token:
            raise AdminAuthError("Admin authentication returned no token", resp.status_code)
        return token

    async def authenticated_request(
        self,
        instance_id: str,
        credentials: AdminCredentials | None = None,
        path: str = "",
        *,
        method: str = "GET",
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Send an admin-authenticated request, waking the instance if needed.

        Args:
            instance_id: Target instance
            credentials: Admin credentials; read from the registry when None
            path: Tenant API path, e.g. "api/backups"

        Returns:
            The tenant response (any status other than a not-running signal)

        Raises:
            InstanceUnavailableError: Every attempt saw a not-running signal
            AdminAuthError: The tenant rejected the credentials
        """
        if credentials is None:
            credentials = await self._credentials(instance_id)

        max_attempts = max(1, self._settings.max_attempts)
        for attempt in range(1, max_attempts + 1):
            endpoint = self._lifecycle.endpoint(instance_id)
            try:
                if endpoint is None:
                    raise _NotRunning("no_endpoint")
                token = await self._authenticate(endpoint, credentials)
                started = time.monotonic()
                resp = await self._http.request(
                    method,
                    endpoint.url(path),
                    json=json,
                    params=params,
                    headers={**endpoint.headers, "Authorization": token},
                    timeout=self._settings.request_timeout,
                )
                if self._is_not_running(resp):
                    raise _NotRunning(f"http_{resp.status_code}")
            except httpx.TransportError as exc:
                reason = type(exc).__name__
            except _NotRunning as exc:
                reason = exc.reason
            else:
                await self._record(instance_id, method, path, resp, started)
                return resp

            logger.warning(
                "Instance not running (attempt %d/%d): %s",
                attempt,
                max_attempts,
                reason,
                extra={
                    "event": LogEvent.WAKE_TRIGGERED,
                    "component": Component.WAKE,
                    "error_class": ErrorClass.TRANSIENT,
                    "instance_id": instance_id,
                    "attempt": attempt,
                    "reason": reason,
                },
            )
            if attempt < max_attempts:
                woke = await self._lifecycle.wake(instance_id)
                WAKE_ATTEMPTS_TOTAL.labels(result="sent" if woke else "failed").inc()
                await self._sleep(attempt * self._settings.base_delay)

        WAKE_EXHAUSTED_TOTAL.inc()
        logger.error(
            "Instance did not wake after %d attempts",
            max_attempts,
            extra={
                "event": LogEvent.WAKE_EXHAUSTED,
                "component": Component.WAKE,
                "instance_id": instance_id,
                "attempts": max_attempts,
            },
        )
        raise InstanceUnavailableError(
            f"Instance {instance_id} unavailable after {max_attempts} attempts",
            attempts=max_attempts,
        )

    async def _record(
        self,
        instance_id: str,
        method: str,
        path: str,
        resp: httpx.Response,
        started: float,
    ) -> None:
        if self._metrics is not None:
            await best_effort(
                self._metrics.record(
                    instance_id,
                    method,
                    "/" + path.lstrip("/"),
                    resp.status_code,
                    int((time.monotonic() - started) * 1000),
                ),
                what="request_metric",
                instance_id=instance_id,
            )
        if self._activity is not None:
            await best_effort(
                self._activity.record(instance_id),
                what="activity",
                instance_id=instance_id,
            )

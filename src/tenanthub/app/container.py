"""Object graph for one control-plane process.

The API server and the scheduler CLI build the same graph; only the outer
surface differs.
"""

from dataclasses import dataclass

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenanthub.adapters.runtime.fleet_runner import FleetRunnerRuntime
from tenanthub.adapters.runtime.local_process import LocalProcessRuntime
from tenanthub.adapters.storage.snapshot import SnapshotStore
from tenanthub.app.config import RuntimeMode, Settings
from tenanthub.control.activity import ActivityTracker
from tenanthub.control.alerting import AlertNotifier, AlertService
from tenanthub.control.backup_scheduler import BackupScheduler
from tenanthub.control.health_monitor import HealthMonitor
from tenanthub.control.lifecycle import LifecycleManager
from tenanthub.control.scheduler import SchedulerDriver
from tenanthub.control.wake_gateway import WakeGateway
from tenanthub.core.interfaces import InstanceRuntime, SnapshotStorage
from tenanthub.services.instance_registry import InstanceRegistry
from tenanthub.services.port_allocator import PortAllocator
from tenanthub.services.request_metrics import RequestMetricsRecorder

# Shared client limits (health probes + tenant API calls)
HTTP_TIMEOUT_CONNECT = 10.0
HTTP_MAX_CONNECTIONS = 100
HTTP_MAX_KEEPALIVE = 20


@dataclass
class Fleet:
    settings: Settings
    http_client: httpx.AsyncClient
    registry: InstanceRegistry
    lifecycle: LifecycleManager
    gateway: WakeGateway
    health: HealthMonitor
    backups: BackupScheduler
    alerts: AlertService
    request_metrics: RequestMetricsRecorder
    driver: SchedulerDriver

    async def close(self, stop_instances: bool = True) -> None:
        """Stop tracked instances, then release the shared client."""
        await self.lifecycle.shutdown(stop_instances)
        await self.http_client.aclose()


def build_runtime(settings: Settings, http_client: httpx.AsyncClient) -> InstanceRuntime:
    if settings.runtime.mode == RuntimeMode.MANAGED:
        return FleetRunnerRuntime(settings.fleet_runner)
    return LocalProcessRuntime(
        settings.runtime.binary_path,
        bind_host=settings.runtime.bind_host,
        http_client=http_client,
        admin_timeout=settings.runtime.admin_timeout,
    )


def build_fleet(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    http_client: httpx.AsyncClient | None = None,
    runtime: InstanceRuntime | None = None,
    snapshots: SnapshotStorage | None = None,
) -> Fleet:
    """Wire every component from settings.

    ``init_db`` and ``init_storage`` must have run when the defaults for
    ``session_factory`` and ``snapshots`` are used.
    """
    http_client = http_client or httpx.AsyncClient(
        timeout=httpx.Timeout(settings.wake.request_timeout, connect=HTTP_TIMEOUT_CONNECT),
        limits=httpx.Limits(
            max_connections=HTTP_MAX_CONNECTIONS,
            max_keepalive_connections=HTTP_MAX_KEEPALIVE,
        ),
    )
    storage = settings.storage
    registry = InstanceRegistry(session_factory, snapshot_prefix=storage.key_prefix)
    allocator = PortAllocator(
        registry,
        base_port=settings.runtime.base_port,
        pool_size=settings.runtime.port_pool_size,
    )
    snapshots = snapshots or SnapshotStore(
        storage.bucket_name,
        prefix=storage.key_prefix,
        max_retries=storage.max_retries,
        retry_base_delay=storage.retry_base_delay,
    )
    runtime = runtime or build_runtime(settings, http_client)
    activity = ActivityTracker(registry, debounce_seconds=settings.activity.debounce_seconds)
    lifecycle = LifecycleManager(
        registry,
        allocator,
        snapshots,
        runtime,
        settings.runtime,
        on_delete=activity.forget,
    )

    request_metrics = RequestMetricsRecorder(session_factory)
    gateway = WakeGateway(
        lifecycle,
        registry,
        settings.wake,
        http_client,
        metrics=request_metrics,
        activity=activity,
    )
    health = HealthMonitor(session_factory, http_client, settings.health)
    backups = BackupScheduler(session_factory, registry, gateway, settings.backup)
    alerts = AlertService(
        session_factory,
        AlertNotifier(http_client, webhook_timeout=settings.alert.webhook_timeout),
    )
    driver = SchedulerDriver(
        registry, lifecycle, health, backups, alerts, request_metrics, settings
    )
    return Fleet(
        settings=settings,
        http_client=http_client,
        registry=registry,
        lifecycle=lifecycle,
        gateway=gateway,
        health=health,
        backups=backups,
        alerts=alerts,
        request_metrics=request_metrics,
        driver=driver,
    )

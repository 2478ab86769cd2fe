"""Shared fixtures: in-memory registry database, fake S3, fake runtime."""

from collections.abc import AsyncIterator
from pathlib import Path

import httpx
import pytest
from botocore.exceptions import ClientError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenanthub.adapters.storage.snapshot import SnapshotStore
from tenanthub.app.config import DatabaseConfig, RuntimeConfig
from tenanthub.control.lifecycle import LifecycleManager
from tenanthub.core.circuit_breaker import reset_all_circuit_breakers
from tenanthub.core.interfaces import Endpoint, ExitCallback, InstanceRuntime, RuntimeHandle
from tenanthub.core.models import Instance
from tenanthub.infra.postgresql import build_engine, build_session_factory, create_schema
from tenanthub.services.instance_registry import InstanceRegistry
from tenanthub.services.port_allocator import PortAllocator


@pytest.fixture(autouse=True)
def reset_circuit_breakers() -> None:
    """Reset global circuit breakers before each test."""
    reset_all_circuit_breakers()


# =============================================================================
# Registry database
# =============================================================================


@pytest.fixture
async def session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = build_engine(DatabaseConfig(url="sqlite+aiosqlite://"))
    await create_schema(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def registry(session_factory: async_sessionmaker[AsyncSession]) -> InstanceRegistry:
    return InstanceRegistry(session_factory)


@pytest.fixture
async def instance(registry: InstanceRegistry) -> Instance:
    return await registry.create_instance(
        owner_id="user-1",
        name="Blog",
        subdomain="blog",
        admin_email="admin@blog.test",
        admin_secret="s3cret-pass",
    )


# =============================================================================
# Object storage
# =============================================================================


def client_error(code: str, operation: str = "Operation") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class _Body:
    def __init__(self, data: bytes) -> None:
        self._data = data

    async def read(self) -> bytes:
        return self._data


class FakeS3:
    """In-memory bucket exposing the S3 calls the snapshot store makes.

    Exceptions queued in ``fail_next`` are raised by the next calls, in order.
    """

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], bytes] = {}
        self.fail_next: list[Exception] = []
        self.calls: list[str] = []

    def _record(self, op: str) -> None:
        self.calls.append(op)
        if self.fail_next:
            raise self.fail_next.pop(0)

    async def put_object(self, Bucket: str, Key: str, Body: bytes) -> dict:
        self._record("put_object")
        self.objects[(Bucket, Key)] = bytes(Body)
        return {}

    async def get_object(self, Bucket: str, Key: str) -> dict:
        self._record("get_object")
        if (Bucket, Key) not in self.objects:
            raise client_error("NoSuchKey", "GetObject")
        return {"Body": _Body(self.objects[(Bucket, Key)])}

    async def head_object(self, Bucket: str, Key: str) -> dict:
        self._record("head_object")
        if (Bucket, Key) not in self.objects:
            raise client_error("404", "HeadObject")
        return {"ContentLength": len(self.objects[(Bucket, Key)])}

    async def delete_object(self, Bucket: str, Key: str) -> dict:
        self._record("delete_object")
        self.objects.pop((Bucket, Key), None)
        return {}

    def client(self) -> "_FakeClientContext":
        return _FakeClientContext(self)


class _FakeClientContext:
    def __init__(self, s3: FakeS3) -> None:
        self._s3 = s3

    async def __aenter__(self) -> FakeS3:
        return self._s3

    async def __aexit__(self, *exc_info: object) -> None:
        return None


@pytest.fixture
def fake_s3() -> FakeS3:
    return FakeS3()


@pytest.fixture
def snapshots(fake_s3: FakeS3) -> SnapshotStore:
    return SnapshotStore("test-bucket", client_factory=fake_s3.client, retry_base_delay=0.01)


# =============================================================================
# Runtime
# =============================================================================


class FakeRuntime(InstanceRuntime):
    """Records launches; ``exit()`` simulates the process dying on its own."""

    def __init__(self, manages_local_state: bool = True) -> None:
        self.manages_local_state = manages_local_state
        self.launched: list[tuple[str, int]] = []
        self.terminated: list[str] = []
        self.removed: list[str] = []
        self.bootstrapped: list[tuple[str, str]] = []
        self.adoptable: dict[str, RuntimeHandle] = {}
        self.launch_error: Exception | None = None
        self.bootstrap_error: Exception | None = None
        self.state_bytes = b"tenant-state"
        self.state_file = "pb_data/data.db"
        self.closed = False
        self._callbacks: dict[str, tuple[RuntimeHandle, ExitCallback]] = {}

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
        if self.launch_error is not None:
            raise self.launch_error
        self.launched.append((instance_id, port))
        if self.manages_local_state:
            # The tenant binary creates its state file on first boot
            state = data_dir / self.state_file
            state.parent.mkdir(parents=True, exist_ok=True)
            if not state.exists():
                state.write_bytes(self.state_bytes)
        handle = RuntimeHandle(instance_id=instance_id, port=port, pid=1000 + len(self.launched))
        self._callbacks[instance_id] = (handle, on_exit)
        return handle

    async def exit(self, instance_id: str, code: int) -> None:
        handle, on_exit = self._callbacks[instance_id]
        await on_exit(handle, code)

    async def terminate(self, handle: RuntimeHandle) -> None:
        self.terminated.append(handle.instance_id)

    async def bootstrap_admin(self, handle: RuntimeHandle, email: str, secret: str) -> None:
        if self.bootstrap_error is not None:
            raise self.bootstrap_error
        self.bootstrapped.append((handle.instance_id, email))

    async def adopt(self, instance_id: str) -> RuntimeHandle | None:
        return self.adoptable.pop(instance_id, None)

    async def remove(self, instance_id: str) -> None:
        self.removed.append(instance_id)

    def endpoint(self, handle: RuntimeHandle) -> Endpoint:
        return Endpoint(base_url=f"http://127.0.0.1:{handle.port}")

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def runtime_settings(tmp_path: Path) -> RuntimeConfig:
    return RuntimeConfig(
        instances_dir=str(tmp_path / "instances"),
        settle_seconds=0,
        stop_grace_seconds=0,
    )


@pytest.fixture
def allocator(registry: InstanceRegistry) -> PortAllocator:
    return PortAllocator(registry, base_port=8090, pool_size=10)


@pytest.fixture
def lifecycle(
    registry: InstanceRegistry,
    allocator: PortAllocator,
    snapshots: SnapshotStore,
    runtime: FakeRuntime,
    runtime_settings: RuntimeConfig,
) -> LifecycleManager:
    return LifecycleManager(registry, allocator, snapshots, runtime, runtime_settings)


# =============================================================================
# HTTP
# =============================================================================


@pytest.fixture
def make_http_client():
    """Build an AsyncClient whose requests go to ``handler(request)``."""

    def _make(handler) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return _make

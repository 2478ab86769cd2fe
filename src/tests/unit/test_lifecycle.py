"""Tests for LifecycleManager with a fake runtime and in-memory bucket."""

import asyncio
from datetime import timedelta
from pathlib import Path

import pytest

from tenanthub.adapters.storage.snapshot import SnapshotStore
from tenanthub.app.config import RuntimeConfig
from tenanthub.control.activity import ActivityTracker
from tenanthub.control.lifecycle import LifecycleManager
from tenanthub.core.domain import InstanceStatus
from tenanthub.core.errors import InvalidInstanceStateError, SnapshotTransferError
from tenanthub.core.interfaces import RuntimeHandle
from tenanthub.core.models import Instance, utc_now
from tenanthub.services.instance_registry import InstanceRegistry
from tenanthub.services.port_allocator import PortAllocator

from conftest import FakeRuntime, FakeS3, client_error


def _state_path(settings: RuntimeConfig, instance_id: str) -> Path:
    return Path(settings.instances_dir) / instance_id / settings.state_file


def _snapshot_key(instance_id: str) -> tuple[str, str]:
    return ("test-bucket", f"instances/{instance_id}/pb_data.db")


class TestStart:
    async def test_first_boot(
        self,
        lifecycle: LifecycleManager,
        registry: InstanceRegistry,
        runtime: FakeRuntime,
        instance: Instance,
    ) -> None:
        handle = await lifecycle.start(instance.id)

        assert handle.port == 8090
        assert runtime.launched == [(instance.id, 8090)]
        assert runtime.bootstrapped == [(instance.id, "admin@blog.test")]
        assert lifecycle.table.get(instance.id) is handle

        running = await registry.get(instance.id)
        assert running.status == InstanceStatus.RUNNING
        assert running.port == 8090

    async def test_concurrent_starts_spawn_once(
        self,
        lifecycle: LifecycleManager,
        registry: InstanceRegistry,
        runtime: FakeRuntime,
        instance: Instance,
    ) -> None:
        first, second = await asyncio.gather(
            lifecycle.start(instance.id), lifecycle.start(instance.id)
        )

        assert first is second
        assert len(runtime.launched) == 1
        assert (await registry.get(instance.id)).status == InstanceStatus.RUNNING

    async def test_restores_snapshot_and_skips_bootstrap(
        self,
        lifecycle: LifecycleManager,
        runtime: FakeRuntime,
        runtime_settings: RuntimeConfig,
        fake_s3: FakeS3,
        instance: Instance,
    ) -> None:
        fake_s3.objects[_snapshot_key(instance.id)] = b"restored-state"

        await lifecycle.start(instance.id)

        assert _state_path(runtime_settings, instance.id).read_bytes() == b"restored-state"
        assert runtime.bootstrapped == []

    async def test_keeps_previous_port_when_free(
        self,
        lifecycle: LifecycleManager,
        registry: InstanceRegistry,
        instance: Instance,
    ) -> None:
        # Stale record left by a control plane that died while running
        await registry.mark_starting(instance.id)
        await registry.mark_running(instance.id, 8095)
        assert await lifecycle.recover() == [instance.id]

        handle = await lifecycle.start(instance.id)

        assert handle.port == 8095

    async def test_launch_failure_moves_to_error(
        self,
        lifecycle: LifecycleManager,
        registry: InstanceRegistry,
        runtime: FakeRuntime,
        instance: Instance,
    ) -> None:
        runtime.launch_error = OSError("binary not found")

        with pytest.raises(OSError):
            await lifecycle.start(instance.id)

        errored = await registry.get(instance.id)
        assert errored.status == InstanceStatus.ERROR
        assert errored.port is None
        assert instance.id not in lifecycle.table

    async def test_snapshot_failure_moves_to_error(
        self,
        lifecycle: LifecycleManager,
        registry: InstanceRegistry,
        runtime: FakeRuntime,
        fake_s3: FakeS3,
        instance: Instance,
    ) -> None:
        fake_s3.fail_next = [client_error("AccessDenied", "GetObject")]

        with pytest.raises(SnapshotTransferError):
            await lifecycle.start(instance.id)

        assert (await registry.get(instance.id)).status == InstanceStatus.ERROR
        assert runtime.launched == []

    async def test_bootstrap_failure_is_not_fatal(
        self,
        lifecycle: LifecycleManager,
        registry: InstanceRegistry,
        runtime: FakeRuntime,
        instance: Instance,
    ) -> None:
        runtime.bootstrap_error = RuntimeError("admin endpoint down")

        await lifecycle.start(instance.id)

        assert (await registry.get(instance.id)).status == InstanceStatus.RUNNING


class TestStop:
    async def test_stop_uploads_state(
        self,
        lifecycle: LifecycleManager,
        registry: InstanceRegistry,
        runtime: FakeRuntime,
        fake_s3: FakeS3,
        instance: Instance,
    ) -> None:
        await lifecycle.start(instance.id)

        assert await lifecycle.stop(instance.id) is True

        assert runtime.terminated == [instance.id]
        assert fake_s3.objects[_snapshot_key(instance.id)] == runtime.state_bytes
        stopped = await registry.get(instance.id)
        assert stopped.status == InstanceStatus.STOPPED
        assert stopped.port is None
        assert instance.id not in lifecycle.table

    async def test_stop_not_running_is_noop(
        self,
        lifecycle: LifecycleManager,
        registry: InstanceRegistry,
        runtime: FakeRuntime,
        instance: Instance,
    ) -> None:
        assert await lifecycle.stop(instance.id) is False
        assert runtime.terminated == []
        assert (await registry.get(instance.id)).status == InstanceStatus.STOPPED

    async def test_upload_failure_moves_to_error(
        self,
        lifecycle: LifecycleManager,
        registry: InstanceRegistry,
        fake_s3: FakeS3,
        instance: Instance,
    ) -> None:
        await lifecycle.start(instance.id)
        fake_s3.fail_next = [client_error("AccessDenied", "PutObject")]

        with pytest.raises(SnapshotTransferError):
            await lifecycle.stop(instance.id)

        assert (await registry.get(instance.id)).status == InstanceStatus.ERROR
        assert instance.id not in lifecycle.table

    async def test_restart_round_trips_state(
        self,
        lifecycle: LifecycleManager,
        runtime: FakeRuntime,
        runtime_settings: RuntimeConfig,
        instance: Instance,
    ) -> None:
        await lifecycle.start(instance.id)
        state = _state_path(runtime_settings, instance.id)
        state.write_bytes(b"written-while-running")
        await lifecycle.stop(instance.id)
        state.unlink()

        await lifecycle.start(instance.id)

        assert state.read_bytes() == b"written-while-running"
        assert len(runtime.bootstrapped) == 1


class TestUnexpectedExit:
    async def test_clean_exit_persists_and_stops(
        self,
        lifecycle: LifecycleManager,
        registry: InstanceRegistry,
        runtime: FakeRuntime,
        fake_s3: FakeS3,
        instance: Instance,
    ) -> None:
        await lifecycle.start(instance.id)

        await runtime.exit(instance.id, 0)

        assert (await registry.get(instance.id)).status == InstanceStatus.STOPPED
        assert _snapshot_key(instance.id) in fake_s3.objects
        assert instance.id not in lifecycle.table

    async def test_crash_persists_and_errors(
        self,
        lifecycle: LifecycleManager,
        registry: InstanceRegistry,
        runtime: FakeRuntime,
        fake_s3: FakeS3,
        instance: Instance,
    ) -> None:
        await lifecycle.start(instance.id)

        await runtime.exit(instance.id, 1)

        assert (await registry.get(instance.id)).status == InstanceStatus.ERROR
        assert _snapshot_key(instance.id) in fake_s3.objects

    async def test_clean_exit_with_failed_upload_errors(
        self,
        lifecycle: LifecycleManager,
        registry: InstanceRegistry,
        runtime: FakeRuntime,
        fake_s3: FakeS3,
        instance: Instance,
    ) -> None:
        await lifecycle.start(instance.id)
        fake_s3.fail_next = [client_error("AccessDenied", "PutObject")]

        await runtime.exit(instance.id, 0)

        assert (await registry.get(instance.id)).status == InstanceStatus.ERROR

    async def test_exit_after_requested_stop_is_ignored(
        self,
        lifecycle: LifecycleManager,
        registry: InstanceRegistry,
        runtime: FakeRuntime,
        instance: Instance,
    ) -> None:
        await lifecycle.start(instance.id)
        await lifecycle.stop(instance.id)

        await runtime.exit(instance.id, 137)

        assert (await registry.get(instance.id)).status == InstanceStatus.STOPPED


class TestWake:
    async def test_wake_starts_stopped_instance(
        self,
        lifecycle: LifecycleManager,
        registry: InstanceRegistry,
        instance: Instance,
    ) -> None:
        assert await lifecycle.wake(instance.id) is True
        assert (await registry.get(instance.id)).status == InstanceStatus.RUNNING

    async def test_wake_refuses_instance_in_error(
        self,
        lifecycle: LifecycleManager,
        registry: InstanceRegistry,
        runtime: FakeRuntime,
        instance: Instance,
    ) -> None:
        await registry.mark_error(instance.id)

        assert await lifecycle.wake(instance.id) is False
        assert runtime.launched == []

    async def test_wake_failure_returns_false(
        self,
        lifecycle: LifecycleManager,
        runtime: FakeRuntime,
        instance: Instance,
    ) -> None:
        runtime.launch_error = OSError("boom")

        assert await lifecycle.wake(instance.id) is False

    async def test_wake_unknown_instance_returns_false(self, lifecycle: LifecycleManager) -> None:
        assert await lifecycle.wake("01NOPE") is False


class TestDelete:
    async def test_delete_stopped_instance(
        self,
        lifecycle: LifecycleManager,
        registry: InstanceRegistry,
        runtime: FakeRuntime,
        runtime_settings: RuntimeConfig,
        fake_s3: FakeS3,
        instance: Instance,
    ) -> None:
        await lifecycle.start(instance.id)
        await lifecycle.stop(instance.id)

        await lifecycle.delete(instance.id)

        assert runtime.removed == [instance.id]
        assert _snapshot_key(instance.id) not in fake_s3.objects
        assert not (Path(runtime_settings.instances_dir) / instance.id).exists()
        assert await registry.get_by_subdomain("blog") is None

    async def test_delete_drops_activity_debounce_entry(
        self,
        registry: InstanceRegistry,
        allocator: PortAllocator,
        snapshots: SnapshotStore,
        runtime: FakeRuntime,
        runtime_settings: RuntimeConfig,
        instance: Instance,
    ) -> None:
        tracker = ActivityTracker(registry)
        lifecycle = LifecycleManager(
            registry, allocator, snapshots, runtime, runtime_settings, on_delete=tracker.forget
        )
        await tracker.record(instance.id)

        await lifecycle.delete(instance.id)

        assert instance.id not in tracker._last

    async def test_delete_running_instance_rejected(
        self,
        lifecycle: LifecycleManager,
        registry: InstanceRegistry,
        instance: Instance,
    ) -> None:
        await lifecycle.start(instance.id)

        with pytest.raises(InvalidInstanceStateError):
            await lifecycle.delete(instance.id)

        assert (await registry.get(instance.id)).status == InstanceStatus.RUNNING

    async def test_delete_instance_in_error(
        self,
        lifecycle: LifecycleManager,
        registry: InstanceRegistry,
        instance: Instance,
    ) -> None:
        await registry.mark_error(instance.id)

        await lifecycle.delete(instance.id)

        assert await registry.get_by_subdomain("blog") is None


class TestPauseIdle:
    async def test_idle_instance_is_stopped(
        self,
        lifecycle: LifecycleManager,
        registry: InstanceRegistry,
        instance: Instance,
    ) -> None:
        await lifecycle.start(instance.id)
        await registry.touch_activity(instance.id, at=utc_now() - timedelta(hours=50))

        paused = await lifecycle.pause_idle(48 * 3600)

        assert paused == [instance.id]
        assert (await registry.get(instance.id)).status == InstanceStatus.STOPPED

    async def test_active_instance_is_kept(
        self,
        lifecycle: LifecycleManager,
        registry: InstanceRegistry,
        instance: Instance,
    ) -> None:
        await lifecycle.start(instance.id)

        assert await lifecycle.pause_idle(48 * 3600) == []
        assert (await registry.get(instance.id)).status == InstanceStatus.RUNNING

    async def test_recovered_running_record_is_marked_stopped(
        self,
        lifecycle: LifecycleManager,
        registry: InstanceRegistry,
        instance: Instance,
    ) -> None:
        await registry.mark_starting(instance.id)
        await registry.mark_running(instance.id, 8090)
        await registry.touch_activity(instance.id, at=utc_now() - timedelta(hours=50))
        await lifecycle.recover()

        assert await lifecycle.pause_idle(48 * 3600) == [instance.id]
        assert (await registry.get(instance.id)).status == InstanceStatus.STOPPED


class TestSecondControlPlane:
    """A second process over the same registry never touches the first one's children."""

    @pytest.fixture
    def other_runtime(self) -> FakeRuntime:
        return FakeRuntime()

    @pytest.fixture
    def other(
        self,
        registry: InstanceRegistry,
        snapshots: SnapshotStore,
        other_runtime: FakeRuntime,
        runtime_settings: RuntimeConfig,
    ) -> LifecycleManager:
        allocator = PortAllocator(registry, base_port=8090, pool_size=10)
        return LifecycleManager(registry, allocator, snapshots, other_runtime, runtime_settings)

    async def test_wake_does_not_spawn_a_duplicate(
        self,
        lifecycle: LifecycleManager,
        other: LifecycleManager,
        registry: InstanceRegistry,
        other_runtime: FakeRuntime,
        fake_s3: FakeS3,
        instance: Instance,
    ) -> None:
        await lifecycle.start(instance.id)
        s3_calls = list(fake_s3.calls)

        assert await other.wake(instance.id) is False

        assert other_runtime.launched == []
        assert fake_s3.calls == s3_calls
        running = await registry.get(instance.id)
        assert running.status == InstanceStatus.RUNNING
        assert running.port == 8090
        assert instance.id in lifecycle.table

    async def test_start_is_rejected(
        self, lifecycle: LifecycleManager, other: LifecycleManager, instance: Instance
    ) -> None:
        await lifecycle.start(instance.id)

        with pytest.raises(InvalidInstanceStateError):
            await other.start(instance.id)

    async def test_idle_pass_and_shutdown_leave_it_running(
        self,
        lifecycle: LifecycleManager,
        other: LifecycleManager,
        registry: InstanceRegistry,
        instance: Instance,
    ) -> None:
        await lifecycle.start(instance.id)
        await registry.touch_activity(instance.id, at=utc_now() - timedelta(hours=72))

        assert await other.pause_idle(48 * 3600) == []
        await other.shutdown()

        running = await registry.get(instance.id)
        assert running.status == InstanceStatus.RUNNING
        assert running.port == 8090

    async def test_recover_skips_tracked_instances(
        self,
        lifecycle: LifecycleManager,
        registry: InstanceRegistry,
        instance: Instance,
    ) -> None:
        stale = await registry.create_instance("user-1", "Shop", "shop")
        await registry.mark_starting(stale.id)
        await registry.mark_running(stale.id, 8091)
        await lifecycle.start(instance.id)

        assert await lifecycle.recover() == [stale.id]

    async def test_managed_runtime_is_shared(
        self,
        registry: InstanceRegistry,
        allocator: PortAllocator,
        snapshots: SnapshotStore,
        runtime_settings: RuntimeConfig,
        instance: Instance,
    ) -> None:
        # Any control-plane process may drive a remote runner
        managed = FakeRuntime(manages_local_state=False)
        remote = LifecycleManager(registry, allocator, snapshots, managed, runtime_settings)
        await registry.mark_starting(instance.id)
        await registry.mark_running(instance.id, 8090)

        assert await remote.wake(instance.id) is True
        assert managed.launched == [(instance.id, 8090)]


class TestRouting:
    async def test_endpoint_only_while_tracked(
        self, lifecycle: LifecycleManager, instance: Instance
    ) -> None:
        assert lifecycle.endpoint(instance.id) is None

        await lifecycle.start(instance.id)
        assert lifecycle.endpoint(instance.id).base_url == "http://127.0.0.1:8090"

        await lifecycle.stop(instance.id)
        assert lifecycle.endpoint(instance.id) is None

    async def test_shutdown_stops_everything(
        self,
        lifecycle: LifecycleManager,
        registry: InstanceRegistry,
        runtime: FakeRuntime,
        instance: Instance,
    ) -> None:
        other = await registry.create_instance("user-1", "Shop", "shop")
        await lifecycle.start(instance.id)
        await lifecycle.start(other.id)

        await lifecycle.shutdown()

        assert sorted(runtime.terminated) == sorted([instance.id, other.id])
        assert len(lifecycle.table) == 0
        assert runtime.closed is True

    async def test_shutdown_can_leave_instances_running(
        self,
        lifecycle: LifecycleManager,
        runtime: FakeRuntime,
        instance: Instance,
    ) -> None:
        await lifecycle.start(instance.id)

        await lifecycle.shutdown(stop_instances=False)

        assert runtime.terminated == []
        assert runtime.closed is True


class TestManagedRuntime:
    @pytest.fixture
    def managed(self) -> FakeRuntime:
        return FakeRuntime(manages_local_state=False)

    @pytest.fixture
    def managed_lifecycle(
        self,
        registry: InstanceRegistry,
        allocator: PortAllocator,
        snapshots: SnapshotStore,
        managed: FakeRuntime,
        runtime_settings: RuntimeConfig,
    ) -> LifecycleManager:
        return LifecycleManager(registry, allocator, snapshots, managed, runtime_settings)

    async def test_no_snapshot_traffic(
        self,
        managed_lifecycle: LifecycleManager,
        fake_s3: FakeS3,
        instance: Instance,
    ) -> None:
        await managed_lifecycle.start(instance.id)
        await managed_lifecycle.stop(instance.id)

        assert fake_s3.calls == []

    async def test_stop_adopts_runner_instance(
        self,
        managed_lifecycle: LifecycleManager,
        registry: InstanceRegistry,
        managed: FakeRuntime,
        instance: Instance,
    ) -> None:
        await registry.mark_starting(instance.id)
        await registry.mark_running(instance.id, 8090)
        managed.adoptable[instance.id] = RuntimeHandle(
            instance_id=instance.id, port=8090, adopted=True
        )

        assert await managed_lifecycle.stop(instance.id) is True

        assert managed.terminated == [instance.id]
        assert (await registry.get(instance.id)).status == InstanceStatus.STOPPED

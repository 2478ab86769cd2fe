"""Tests for InstanceRegistry."""

from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from tenanthub.core.domain import InstanceStatus, HealthStatus
from tenanthub.core.errors import InstanceNotFoundError, InvalidSubdomainError, SubdomainTakenError
from tenanthub.core.models import HealthCheck, Instance, as_utc, utc_now
from tenanthub.services.instance_registry import InstanceRegistry, validate_subdomain


async def _running(registry: InstanceRegistry, subdomain: str, port: int) -> Instance:
    inst = await registry.create_instance("user-1", subdomain.title(), subdomain)
    await registry.mark_starting(inst.id)
    await registry.mark_running(inst.id, port)
    return await registry.get(inst.id)


class TestValidateSubdomain:
    @pytest.mark.parametrize("value", ["blog", "my-shop", "a1b2c3", "x"])
    def test_valid(self, value: str) -> None:
        assert validate_subdomain(value) == value

    def test_normalizes_case(self) -> None:
        assert validate_subdomain("  MyShop ") == "myshop"

    @pytest.mark.parametrize("value", ["-blog", "blog-", "my_shop", "shop.io", "", "a" * 64])
    def test_invalid(self, value: str) -> None:
        with pytest.raises(InvalidSubdomainError):
            validate_subdomain(value)


class TestCreateInstance:
    async def test_created_stopped_with_snapshot_key(self, registry: InstanceRegistry) -> None:
        inst = await registry.create_instance("user-1", "Blog", "blog", "a@b.test", "pw")

        assert inst.status == InstanceStatus.STOPPED
        assert inst.port is None
        assert inst.snapshot_key == f"instances/{inst.id}/pb_data.db"
        assert inst.admin_email == "a@b.test"

    async def test_duplicate_subdomain_rejected(self, registry: InstanceRegistry) -> None:
        await registry.create_instance("user-1", "Blog", "blog")

        with pytest.raises(SubdomainTakenError):
            await registry.create_instance("user-2", "Other", "BLOG")

    async def test_invalid_subdomain_rejected(self, registry: InstanceRegistry) -> None:
        with pytest.raises(InvalidSubdomainError):
            await registry.create_instance("user-1", "Blog", "not valid")

    async def test_lookup(self, registry: InstanceRegistry, instance: Instance) -> None:
        assert (await registry.get(instance.id)).subdomain == "blog"
        assert (await registry.get_by_subdomain("blog")).id == instance.id
        assert await registry.get_by_subdomain("missing") is None
        assert [i.id for i in await registry.list_for_owner("user-1")] == [instance.id]

    async def test_get_missing_raises(self, registry: InstanceRegistry) -> None:
        with pytest.raises(InstanceNotFoundError):
            await registry.get("01NOPE")


class TestTransitions:
    async def test_start_stop_cycle(self, registry: InstanceRegistry, instance: Instance) -> None:
        assert await registry.mark_starting(instance.id) is None
        await registry.mark_running(instance.id, 8090)

        running = await registry.get(instance.id)
        assert running.status == InstanceStatus.RUNNING
        assert running.port == 8090
        assert running.last_started_at is not None
        assert running.last_activity_at is not None

        await registry.mark_stopping(instance.id)
        await registry.mark_stopped(instance.id)
        stopped = await registry.get(instance.id)
        assert stopped.status == InstanceStatus.STOPPED
        assert stopped.port is None
        assert stopped.last_stopped_at is not None

    async def test_mark_starting_returns_previous_port(
        self, registry: InstanceRegistry, instance: Instance
    ) -> None:
        await registry.mark_starting(instance.id)
        await registry.mark_running(instance.id, 8093)

        assert await registry.mark_starting(instance.id) == 8093
        assert (await registry.get(instance.id)).port is None

    async def test_mark_error_clears_port(self, registry: InstanceRegistry) -> None:
        inst = await _running(registry, "shop", 8091)

        await registry.mark_error(inst.id)

        errored = await registry.get(inst.id)
        assert errored.status == InstanceStatus.ERROR
        assert errored.port is None

    async def test_transition_of_missing_instance_raises(self, registry: InstanceRegistry) -> None:
        with pytest.raises(InstanceNotFoundError):
            await registry.mark_stopped("01NOPE")


class TestPortUniqueness:
    async def test_two_active_instances_cannot_share_a_port(
        self, registry: InstanceRegistry
    ) -> None:
        await _running(registry, "blog", 8090)
        other = await registry.create_instance("user-1", "Shop", "shop")
        await registry.mark_starting(other.id)

        with pytest.raises(IntegrityError):
            await registry.claim_port(other.id, 8090)

    async def test_stopped_instance_releases_its_port(self, registry: InstanceRegistry) -> None:
        first = await _running(registry, "blog", 8090)
        await registry.mark_stopped(first.id)

        other = await registry.create_instance("user-1", "Shop", "shop")
        await registry.mark_starting(other.id)
        await registry.claim_port(other.id, 8090)

        assert (await registry.get(other.id)).port == 8090

    async def test_active_ports(self, registry: InstanceRegistry) -> None:
        blog = await _running(registry, "blog", 8090)
        await _running(registry, "shop", 8091)

        assert await registry.active_ports() == {8090, 8091}
        assert await registry.active_ports(exclude=blog.id) == {8091}


class TestIdleAndActivity:
    async def test_find_idle(self, registry: InstanceRegistry) -> None:
        idle = await _running(registry, "blog", 8090)
        await _running(registry, "shop", 8091)
        now = utc_now()
        await registry.touch_activity(idle.id, at=now - timedelta(hours=49))

        found = await registry.find_idle(48 * 3600, now=now)

        assert [i.id for i in found] == [idle.id]

    async def test_stopped_instances_are_never_idle(
        self, registry: InstanceRegistry, instance: Instance
    ) -> None:
        later = utc_now() + timedelta(days=30)
        assert await registry.find_idle(3600, now=later) == []

    async def test_touch_activity(self, registry: InstanceRegistry, instance: Instance) -> None:
        at = utc_now() - timedelta(minutes=5)
        await registry.touch_activity(instance.id, at=at)

        touched = await registry.get(instance.id)
        assert abs(as_utc(touched.last_activity_at) - at) < timedelta(seconds=1)


class TestDelete:
    async def test_delete_removes_dependents(
        self, registry: InstanceRegistry, instance: Instance, session_factory
    ) -> None:
        async with session_factory() as session:
            session.add(HealthCheck(instance_id=instance.id, status=HealthStatus.HEALTHY))
            await session.commit()

        await registry.delete(instance.id)

        with pytest.raises(InstanceNotFoundError):
            await registry.get(instance.id)
        async with session_factory() as session:
            count = await session.scalar(select(func.count()).select_from(HealthCheck))
        assert count == 0

    async def test_delete_missing_raises(self, registry: InstanceRegistry) -> None:
        with pytest.raises(InstanceNotFoundError):
            await registry.delete("01NOPE")

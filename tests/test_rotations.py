from __future__ import annotations

import asyncio
from typing import Callable

import pytest
from prometheus_client import REGISTRY
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from controlplane.errors import ConfigurationError, LockStateError, ResourceExhaustionError
from controlplane.schemas.rotations import AssignedRotation, EndpointId, Instance, RotationId
from controlplane.services import assignments as assignment_service
from controlplane.services.rotation_lock import DatabaseRotationLockManager
from controlplane.services.rotation_pool import RotationPool
from controlplane.services.rotations import RotationAllocator, assign_rotations_for_instance
from factories import endpoints_spec, legacy_spec


def _by_endpoint(rotations: list[AssignedRotation]) -> dict[str, str]:
    return {str(item.endpoint_id): str(item.rotation_id) for item in rotations}


def _assignment_count(kind: str) -> float:
    return REGISTRY.get_sample_value("controlplane_rotation_assignments_total", {"kind": kind}) or 0.0


async def test_new_endpoints_take_lowest_rotations_in_declaration_order(
    session: AsyncSession, allocator: RotationAllocator
) -> None:
    spec = endpoints_spec("e1", "e2")
    instance = Instance(instance_id="tenant.app.default", name="default")
    async with allocator.lock() as lock:
        rotations = await allocator.get_or_assign_rotations(session, spec, instance, lock)

    assert [str(item.endpoint_id) for item in rotations] == ["e1", "e2"]
    assert [str(item.rotation_id) for item in rotations] == ["A", "B"]
    assert rotations[0].cluster_id == "qrs"
    assert rotations[0].regions == frozenset({"us-east-1", "eu-west-1"})


async def test_existing_assignment_is_reused(session: AsyncSession, allocator: RotationAllocator) -> None:
    await assign_rotations_for_instance(session, allocator, "tenant.app.default", endpoints_spec("e1"))

    rotations = await assign_rotations_for_instance(
        session, allocator, "tenant.app.default", endpoints_spec("e1", "e2")
    )

    assert _by_endpoint(rotations) == {"e1": "A", "e2": "B"}


async def test_repeated_assignment_does_not_churn(session: AsyncSession, allocator: RotationAllocator) -> None:
    spec = endpoints_spec("e1", "e2")
    first = await assign_rotations_for_instance(session, allocator, "tenant.app.default", spec)
    second = await assign_rotations_for_instance(session, allocator, "tenant.app.default", spec)

    assert first == second
    stored = await assignment_service.list_for_instance(session, "tenant.app.default")
    assert sorted((row.endpoint_id, row.rotation_id) for row in stored) == [("e1", "A"), ("e2", "B")]


async def test_rotation_is_never_shared_between_instances(
    session: AsyncSession, allocator: RotationAllocator
) -> None:
    await assign_rotations_for_instance(session, allocator, "tenant.one.default", endpoints_spec("e1"))
    await assign_rotations_for_instance(session, allocator, "tenant.two.default", endpoints_spec("e1", "e2"))

    rows = await assignment_service.list_assigned_rotations(session)
    rotation_ids = [row.rotation_id for row in rows]
    assert len(rotation_ids) == len(set(rotation_ids)) == 3
    assert {(row.instance_id, row.endpoint_id): row.rotation_id for row in rows} == {
        ("tenant.one.default", "e1"): "A",
        ("tenant.two.default", "e1"): "B",
        ("tenant.two.default", "e2"): "C",
    }


async def test_pool_exhaustion_fails_after_assigning_in_order(
    session: AsyncSession, allocator: RotationAllocator
) -> None:
    instance = Instance(instance_id="tenant.app.default", name="default")
    async with allocator.lock() as lock:
        assigned = await allocator.get_or_assign_rotations(session, endpoints_spec("e1", "e2", "e3"), instance, lock)
        assert [str(item.rotation_id) for item in assigned] == ["A", "B", "C"]
        with pytest.raises(ResourceExhaustionError):
            await allocator.get_or_assign_rotations(
                session, endpoints_spec("e1", "e2", "e3", "e4"), instance, lock
            )


async def test_exhaustion_commits_nothing(session: AsyncSession, allocator: RotationAllocator) -> None:
    await assign_rotations_for_instance(session, allocator, "tenant.one.default", endpoints_spec("e1", "e2"))

    with pytest.raises(ResourceExhaustionError):
        await assign_rotations_for_instance(
            session, allocator, "tenant.two.default", endpoints_spec("e1", "e2")
        )

    assert await assignment_service.list_for_instance(session, "tenant.two.default") == []
    async with allocator.lock() as lock:
        available = await allocator.available_rotations(session, lock)
    assert list(available) == [RotationId("C")]


async def test_available_rotations_exclude_assigned_and_are_sorted(
    session: AsyncSession, make_allocator: Callable[..., RotationAllocator]
) -> None:
    allocator = make_allocator({"r3": "c.", "r1": "a.", "r2": "b.", "r4": "d."})
    await assign_rotations_for_instance(session, allocator, "tenant.app.default", endpoints_spec("e1"))

    async with allocator.lock() as lock:
        available = await allocator.available_rotations(session, lock)

    assert [str(rotation_id) for rotation_id in available] == ["r2", "r3", "r4"]
    assert available[RotationId("r2")].dns_target == "b."


async def test_available_rotations_requires_held_lock(
    session: AsyncSession, allocator: RotationAllocator
) -> None:
    async with allocator.lock() as lock:
        pass
    with pytest.raises(LockStateError):
        await allocator.available_rotations(session, lock)
    with pytest.raises(LockStateError):
        await allocator.available_rotations(session, None)  # type: ignore[arg-type]


async def test_both_declaration_forms_are_rejected_even_without_rotations(
    session: AsyncSession, make_allocator: Callable[..., RotationAllocator]
) -> None:
    spec = endpoints_spec("e1")
    spec.global_service_id = "qrs"
    instance = Instance(instance_id="tenant.app.default", name="default")
    for allocator in (make_allocator(), make_allocator({})):
        async with allocator.lock() as lock:
            with pytest.raises(ConfigurationError, match="both global-service-id and 'endpoints'"):
                await allocator.get_or_assign_rotations(session, spec, instance, lock)


async def test_legacy_declaration_needs_two_production_regions(
    session: AsyncSession, allocator: RotationAllocator
) -> None:
    instance = Instance(instance_id="tenant.app.beta", name="beta")
    async with allocator.lock() as lock:
        with pytest.raises(ConfigurationError, match="instance 'beta'") as excinfo:
            spec = legacy_spec(["us-east-1"], instance="beta")
            await allocator.get_or_assign_rotations(session, spec, instance, lock)
    assert excinfo.value.subject == "beta"


async def test_legacy_declaration_assigns_default_endpoint(
    session: AsyncSession, allocator: RotationAllocator
) -> None:
    spec = legacy_spec(["us-east-1", "eu-west-1"])
    rotations = await assign_rotations_for_instance(session, allocator, "tenant.app.default", spec)

    assert rotations == [
        AssignedRotation(
            cluster_id="qrs",
            endpoint_id=EndpointId.default(),
            rotation_id=RotationId("A"),
            regions=frozenset({"us-east-1", "eu-west-1"}),
        )
    ]
    again = await assign_rotations_for_instance(session, allocator, "tenant.app.default", spec)
    assert again == rotations


async def test_empty_pool_assigns_nothing(
    session: AsyncSession, make_allocator: Callable[..., RotationAllocator]
) -> None:
    allocator = make_allocator({})
    rotations = await assign_rotations_for_instance(
        session, allocator, "tenant.app.default", endpoints_spec("e1")
    )
    assert rotations == []


async def test_duplicate_endpoint_ids_are_rejected(session: AsyncSession, allocator: RotationAllocator) -> None:
    with pytest.raises(ConfigurationError, match="declared more than once"):
        await assign_rotations_for_instance(session, allocator, "tenant.app.default", endpoints_spec("e1", "e1"))
    assert await assignment_service.list_assigned_rotations(session) == []


async def test_removed_endpoint_frees_its_rotation(session: AsyncSession, allocator: RotationAllocator) -> None:
    await assign_rotations_for_instance(session, allocator, "tenant.app.default", endpoints_spec("e1", "e2"))
    await assign_rotations_for_instance(session, allocator, "tenant.app.default", endpoints_spec("e2"))

    async with allocator.lock() as lock:
        available = await allocator.available_rotations(session, lock)
    assert [str(rotation_id) for rotation_id in available] == ["A", "C"]


async def test_instance_removal_releases_rotations(session: AsyncSession, allocator: RotationAllocator) -> None:
    await assign_rotations_for_instance(session, allocator, "tenant.one.default", endpoints_spec("e1", "e2", "e3"))
    assert await assignment_service.remove_instance(session, "tenant.one.default") == 3

    rotations = await assign_rotations_for_instance(session, allocator, "tenant.two.default", endpoints_spec("e1"))
    assert _by_endpoint(rotations) == {"e1": "A"}


async def test_exhaustion_counts_no_assignments(
    session: AsyncSession, make_allocator: Callable[..., RotationAllocator]
) -> None:
    allocator = make_allocator({"A": "a.example."})
    before = (_assignment_count("new"), _assignment_count("reused"))

    with pytest.raises(ResourceExhaustionError):
        await assign_rotations_for_instance(session, allocator, "tenant.app.default", endpoints_spec("e1", "e2"))
    assert (_assignment_count("new"), _assignment_count("reused")) == before

    await assign_rotations_for_instance(session, allocator, "tenant.app.default", endpoints_spec("e1"))
    await assign_rotations_for_instance(session, allocator, "tenant.app.default", endpoints_spec("e1"))
    assert _assignment_count("new") == before[0] + 1
    assert _assignment_count("reused") == before[1] + 1


async def test_stored_rows_follow_declaration_order(session: AsyncSession, allocator: RotationAllocator) -> None:
    await assign_rotations_for_instance(session, allocator, "tenant.app.default", endpoints_spec("zeta", "alpha"))
    stored = await assignment_service.list_for_instance(session, "tenant.app.default")
    assert [(row.endpoint_id, row.rotation_id) for row in stored] == [("zeta", "A"), ("alpha", "B")]

    await assign_rotations_for_instance(session, allocator, "tenant.app.default", endpoints_spec("alpha", "zeta"))
    stored = await assignment_service.list_for_instance(session, "tenant.app.default")
    assert [(row.endpoint_id, row.rotation_id) for row in stored] == [("alpha", "B"), ("zeta", "A")]


async def test_legacy_declaration_reuses_first_declared_endpoint(
    session: AsyncSession, allocator: RotationAllocator
) -> None:
    await assign_rotations_for_instance(session, allocator, "tenant.app.default", endpoints_spec("zeta", "alpha"))

    rotations = await assign_rotations_for_instance(
        session, allocator, "tenant.app.default", legacy_spec(["us-east-1", "eu-west-1"])
    )

    assert _by_endpoint(rotations) == {"default": "A"}
    async with allocator.lock() as lock:
        available = await allocator.available_rotations(session, lock)
    assert [str(rotation_id) for rotation_id in available] == ["B", "C"]


async def test_holder_whose_lease_was_taken_over_cannot_commit(
    sessionmaker: async_sessionmaker[AsyncSession],
) -> None:
    pool = RotationPool({"A": "a.example.", "B": "b.example."})
    slow = RotationAllocator(
        pool, DatabaseRotationLockManager(sessionmaker, holder="slow", lease_seconds=0.2, poll_seconds=0.02)
    )
    fast = RotationAllocator(
        pool, DatabaseRotationLockManager(sessionmaker, holder="fast", timeout_seconds=5, poll_seconds=0.02)
    )
    spec = endpoints_spec("e1")

    async with sessionmaker() as slow_session, sessionmaker() as fast_session:
        async with slow.lock() as lock:
            instance = await assignment_service.load_instance(slow_session, "tenant.one.default", spec.instance)
            rotations = await slow.get_or_assign_rotations(slow_session, spec, instance, lock)
            assert _by_endpoint(rotations) == {"e1": "A"}

            await asyncio.sleep(0.4)
            taken = await assign_rotations_for_instance(fast_session, fast, "tenant.two.default", spec)
            assert _by_endpoint(taken) == {"e1": "A"}

            with pytest.raises(LockStateError, match="taken over"):
                await assignment_service.replace_instance_rotations(
                    slow_session,
                    "tenant.one.default",
                    rotations,
                    lock_manager=slow.lock_manager,
                    lock=lock,
                )

        assert await assignment_service.list_for_instance(fast_session, "tenant.one.default") == []
        rows = await assignment_service.list_assigned_rotations(fast_session)
        assert [(row.instance_id, row.rotation_id) for row in rows] == [("tenant.two.default", "A")]


async def test_concurrent_assignments_under_database_lock_get_distinct_rotations(
    sessionmaker: async_sessionmaker[AsyncSession],
) -> None:
    pool = RotationPool({"A": "a.example.", "B": "b.example.", "C": "c.example.", "D": "d.example."})
    instance_ids = [f"tenant.app{index}.default" for index in range(4)]

    async def assign(instance_id: str) -> list[AssignedRotation]:
        lock_manager = DatabaseRotationLockManager(
            sessionmaker, holder=instance_id, timeout_seconds=20, poll_seconds=0.01
        )
        async with sessionmaker() as session:
            return await assign_rotations_for_instance(
                session, RotationAllocator(pool, lock_manager), instance_id, endpoints_spec("e1")
            )

    results = await asyncio.gather(*(assign(instance_id) for instance_id in instance_ids))

    assert sorted(str(rotations[0].rotation_id) for rotations in results) == ["A", "B", "C", "D"]
    async with sessionmaker() as session:
        rows = await assignment_service.list_assigned_rotations(session)
    assert sorted(row.rotation_id for row in rows) == ["A", "B", "C", "D"]
    assert len({row.instance_id for row in rows}) == 4

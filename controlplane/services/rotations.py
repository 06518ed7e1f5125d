"""Assignment of global rotations to application endpoints.

Rotations are a fixed, scarce pool. Every read-modify-write of the
assignment table happens while the cluster-wide rotation lock is held, and
the current assignments are read fresh from the table on every call.
"""

from __future__ import annotations

from collections import OrderedDict
from typing import AsyncContextManager, Dict, List, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from controlplane.errors import ConfigurationError, ResourceExhaustionError
from controlplane.logger import get_logger
from controlplane.metrics import record_rotation_assignment, record_rotation_exhausted
from controlplane.schemas.deployment import DeploymentSpec
from controlplane.schemas.rotations import AssignedRotation, EndpointId, Instance, Rotation, RotationId
from controlplane.services import assignments as assignment_service
from controlplane.services.rotation_lock import RotationLock, RotationLockManager
from controlplane.services.rotation_pool import RotationPool

_logger = get_logger("services.rotations")


class RotationAllocator:
    def __init__(self, pool: RotationPool, lock_manager: RotationLockManager) -> None:
        self.pool = pool
        self.lock_manager = lock_manager

    def lock(self) -> AsyncContextManager[RotationLock]:
        """Acquire the cluster-wide rotation lock for one allocation."""
        return self.lock_manager.lock()

    async def available_rotations(
        self,
        session: AsyncSession,
        lock: RotationLock,
    ) -> Mapping[RotationId, Rotation]:
        """Returns all unassigned rotations, ordered by rotation id."""
        self.lock_manager.require_valid(lock)
        assigned = set(await assignment_service.assigned_rotation_ids(session))
        available: Dict[RotationId, Rotation] = OrderedDict()
        for rotation in self.pool:
            if rotation.id not in assigned:
                available[rotation.id] = rotation
        return available

    async def get_or_assign_rotations(
        self,
        session: AsyncSession,
        spec: DeploymentSpec,
        instance: Instance,
        lock: RotationLock,
    ) -> List[AssignedRotation]:
        """Returns the rotation assignments for every endpoint of the instance.

        Existing assignments are returned unchanged. Endpoints without one get
        the lowest available rotation, in declaration order. Nothing is
        written here; the caller persists the result while still holding
        ``lock``.
        """
        self.lock_manager.require_valid(lock)
        if spec.global_service_id is not None and spec.endpoints:
            raise ConfigurationError(
                "Cannot provision rotations with both global-service-id and 'endpoints'",
                subject=instance.name,
            )
        if not self.pool:
            return []

        async with _logger.operation(
            "rotations.assign",
            "Resolving rotation assignments",
            instance_id=instance.instance_id,
            existing=len(instance.rotations),
        ) as op:
            if spec.global_service_id is not None:
                op.step("mode.legacy", "Using global-service-id declaration")
                result = [await self._legacy_assignment(session, spec, instance, lock)]
            elif spec.endpoints:
                op.step("mode.endpoints", "Using endpoints declaration", endpoints=len(spec.endpoints))
                result = await self._endpoint_assignments(session, spec, instance, lock)
            else:
                op.step("mode.none", "No rotations declared")
                result = []
            reused_ids = {assigned.rotation_id for assigned in instance.rotations}
            for assigned in result:
                record_rotation_assignment(reused=assigned.rotation_id in reused_ids)
            op.step("resolve.done", "Resolved rotation assignments", count=len(result))
            return result

    async def _legacy_assignment(
        self,
        session: AsyncSession,
        spec: DeploymentSpec,
        instance: Instance,
        lock: RotationLock,
    ) -> AssignedRotation:
        regions = frozenset(spec.production_regions())
        if instance.rotations:
            rotation_id = instance.rotations[0].rotation_id
        else:
            if len(regions) < 2:
                raise ConfigurationError(
                    "global-service-id is set but less than 2 prod zones are defined "
                    f"in instance '{instance.name}'",
                    subject=instance.name,
                )
            available = await self.available_rotations(session, lock)
            rotation_id = self._take_first(list(available))
            _logger.info(
                "rotations.offer",
                "Offering rotation to instance",
                rotation_id=str(rotation_id),
                instance_id=instance.instance_id,
            )
        return AssignedRotation(
            cluster_id=spec.global_service_id or "",
            endpoint_id=EndpointId.default(),
            rotation_id=rotation_id,
            regions=regions,
        )

    async def _endpoint_assignments(
        self,
        session: AsyncSession,
        spec: DeploymentSpec,
        instance: Instance,
        lock: RotationLock,
    ) -> List[AssignedRotation]:
        seen: set[str] = set()
        for endpoint in spec.endpoints:
            if endpoint.endpoint_id in seen:
                raise ConfigurationError(
                    f"Endpoint '{endpoint.endpoint_id}' is declared more than once "
                    f"in instance '{instance.name}'",
                    subject=instance.name,
                )
            seen.add(endpoint.endpoint_id)

        available = list(await self.available_rotations(session, lock))
        existing = {assigned.endpoint_id: assigned for assigned in instance.rotations}
        result: List[AssignedRotation] = []
        for endpoint in spec.endpoints:
            endpoint_id = EndpointId(endpoint.endpoint_id)
            assigned = existing.get(endpoint_id)
            if assigned is None:
                rotation_id = self._take_first(available)
                _logger.info(
                    "rotations.offer",
                    "Offering rotation to endpoint",
                    rotation_id=str(rotation_id),
                    instance_id=instance.instance_id,
                    endpoint_id=str(endpoint_id),
                )
            else:
                rotation_id = assigned.rotation_id
            result.append(
                AssignedRotation(
                    cluster_id=endpoint.container_id,
                    endpoint_id=endpoint_id,
                    rotation_id=rotation_id,
                    regions=frozenset(endpoint.regions),
                )
            )
        return result

    @staticmethod
    def _take_first(available: List[RotationId]) -> RotationId:
        if not available:
            record_rotation_exhausted()
            raise ResourceExhaustionError()
        return available.pop(0)


async def assign_rotations_for_instance(
    session: AsyncSession,
    allocator: RotationAllocator,
    instance_id: str,
    spec: DeploymentSpec,
) -> List[AssignedRotation]:
    """Lock, compute and persist the rotations of one instance.

    The lock is held until the new assignments are committed. If anything
    fails, the stored assignments are left as they were.
    """
    async with allocator.lock() as lock:
        try:
            instance = await assignment_service.load_instance(session, instance_id, spec.instance)
            rotations = await allocator.get_or_assign_rotations(session, spec, instance, lock)
        except Exception:
            await session.rollback()
            raise
        await assignment_service.replace_instance_rotations(
            session,
            instance_id,
            rotations,
            lock_manager=allocator.lock_manager,
            lock=lock,
        )
    _logger.info(
        "rotations.persist",
        "Stored rotation assignments",
        instance_id=instance_id,
        count=len(rotations),
    )
    return rotations

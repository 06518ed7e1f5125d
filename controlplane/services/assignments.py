from __future__ import annotations

from typing import List, Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from controlplane.errors import LockStateError
from controlplane.logger import get_logger
from controlplane.models.assigned_rotation import RotationAssignment
from controlplane.schemas.rotations import AssignedRotation, EndpointId, Instance, RotationId
from controlplane.services.events import record_event
from controlplane.services.rotation_lock import RotationLock, RotationLockManager

_logger = get_logger("services.assignments")


def to_assigned_rotation(row: RotationAssignment) -> AssignedRotation:
    return AssignedRotation(
        cluster_id=row.cluster_id,
        endpoint_id=EndpointId(row.endpoint_id),
        rotation_id=RotationId(row.rotation_id),
        regions=frozenset(row.regions or []),
    )


async def list_assigned_rotations(session: AsyncSession, limit: int = 1000) -> List[RotationAssignment]:
    result = await session.execute(
        select(RotationAssignment)
        .order_by(RotationAssignment.instance_id.asc(), RotationAssignment.endpoint_id.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def assigned_rotation_ids(session: AsyncSession) -> List[RotationId]:
    """Every rotation id referenced by any instance, read straight from the table."""
    result = await session.execute(select(RotationAssignment.rotation_id))
    return [RotationId(str(row[0])) for row in result.all()]


async def list_for_instance(session: AsyncSession, instance_id: str) -> List[RotationAssignment]:
    result = await session.execute(
        select(RotationAssignment)
        .where(RotationAssignment.instance_id == instance_id)
        .order_by(RotationAssignment.position.asc(), RotationAssignment.endpoint_id.asc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def load_instance(session: AsyncSession, instance_id: str, name: str) -> Instance:
    rows = await list_for_instance(session, instance_id)
    return Instance(
        instance_id=instance_id,
        name=name,
        rotations=tuple(to_assigned_rotation(row) for row in rows),
    )


async def replace_instance_rotations(
    session: AsyncSession,
    instance_id: str,
    rotations: Sequence[AssignedRotation],
    *,
    lock_manager: RotationLockManager,
    lock: RotationLock,
) -> List[RotationAssignment]:
    """Make the stored assignments of one instance equal to ``rotations``.

    The rotation lock is fenced in the same transaction as the writes; if its
    lease was lost nothing is written and :class:`LockStateError` is raised.
    Rows keep the order of ``rotations``.
    """
    async with _logger.operation(
        "assignments.replace",
        "Persisting rotation assignments",
        instance_id=instance_id,
        count=len(rotations),
    ) as op:
        try:
            await lock_manager.fence(session, lock)
            op.step("lock.fence", "Rotation lock still held", lock=lock.name)

            keep = [str(item.endpoint_id) for item in rotations]
            stale = await session.execute(
                delete(RotationAssignment)
                .where(RotationAssignment.instance_id == instance_id)
                .where(RotationAssignment.endpoint_id.not_in(keep))
                .execution_options(synchronize_session=False)
            )
            removed = int(stale.rowcount or 0)
            op.step("db.delete", "Dropped assignments of undeclared endpoints", removed=removed)

            existing = {row.endpoint_id: row for row in await list_for_instance(session, instance_id)}
            added = 0
            for position, item in enumerate(rotations):
                endpoint_id = str(item.endpoint_id)
                regions = sorted(item.regions)
                row = existing.get(endpoint_id)
                if row is None:
                    session.add(
                        RotationAssignment(
                            instance_id=instance_id,
                            endpoint_id=endpoint_id,
                            position=position,
                            cluster_id=item.cluster_id,
                            rotation_id=str(item.rotation_id),
                            regions=regions,
                        )
                    )
                    added += 1
                    continue
                row.position = position
                row.cluster_id = item.cluster_id
                row.rotation_id = str(item.rotation_id)
                row.regions = regions
            op.step("db.upsert", "Prepared assignment rows", added=added)

            if added or removed:
                await record_event(
                    session,
                    "rotations",
                    "rotations.assign",
                    fields={
                        "instance_id": instance_id,
                        "added": added,
                        "removed": removed,
                        "rotations": {str(item.endpoint_id): str(item.rotation_id) for item in rotations},
                    },
                )
                op.step("event.record", "Recorded rotation assignment event")
            await session.commit()
        except IntegrityError as exc:
            await session.rollback()
            raise LockStateError(
                f"Rotation assignments of instance '{instance_id}' clash with a concurrent writer"
            ) from exc
        except Exception:
            await session.rollback()
            raise
        op.step("db.commit", "Committed rotation assignments")
        return await list_for_instance(session, instance_id)


async def remove_instance(session: AsyncSession, instance_id: str) -> int:
    async with _logger.operation(
        "assignments.remove",
        "Removing rotation assignments of instance",
        instance_id=instance_id,
    ) as op:
        result = await session.execute(
            delete(RotationAssignment)
            .where(RotationAssignment.instance_id == instance_id)
            .execution_options(synchronize_session=False)
        )
        removed = int(result.rowcount or 0)
        if removed:
            await record_event(
                session,
                "rotations",
                "rotations.release",
                fields={"instance_id": instance_id, "removed": removed},
            )
        await session.commit()
        op.step("db.commit", "Removed rotation assignments", removed=removed)
        return removed

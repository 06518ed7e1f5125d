from __future__ import annotations

from typing import Dict, List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from controlplane.dependencies import get_db_session, get_rotation_allocator
from controlplane.errors import ConfigurationError, LockStateError, LockTimeoutError, ResourceExhaustionError
from controlplane.schemas.deployment import DeploymentSpec
from controlplane.schemas.rotations import AssignedRotationOut, RotationOut
from controlplane.services import assignments as assignment_service
from controlplane.services.rotations import RotationAllocator, assign_rotations_for_instance

router = APIRouter(tags=["rotations"])


@router.get("/rotations", response_model=List[RotationOut])
async def list_rotations(
    allocator: RotationAllocator = Depends(get_rotation_allocator),
) -> List[RotationOut]:
    return [RotationOut.from_rotation(rotation) for rotation in allocator.pool]


@router.get("/rotations/available", response_model=List[RotationOut])
async def list_available_rotations(
    session: AsyncSession = Depends(get_db_session),
    allocator: RotationAllocator = Depends(get_rotation_allocator),
) -> List[RotationOut]:
    try:
        async with allocator.lock() as lock:
            available = await allocator.available_rotations(session, lock)
    except LockTimeoutError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return [RotationOut.from_rotation(rotation) for rotation in available.values()]


@router.get("/rotations/assignments", response_model=List[AssignedRotationOut])
async def list_assignments(
    session: AsyncSession = Depends(get_db_session),
) -> List[AssignedRotationOut]:
    rows = await assignment_service.list_assigned_rotations(session)
    return [AssignedRotationOut.model_validate(row) for row in rows]


@router.get("/instances/{instance_id}/rotations", response_model=List[AssignedRotationOut])
async def get_instance_rotations(
    instance_id: str,
    session: AsyncSession = Depends(get_db_session),
) -> List[AssignedRotationOut]:
    rows = await assignment_service.list_for_instance(session, instance_id)
    return [AssignedRotationOut.model_validate(row) for row in rows]


@router.post(
    "/instances/{instance_id}/rotations",
    response_model=List[AssignedRotationOut],
    status_code=status.HTTP_200_OK,
)
async def assign_instance_rotations(
    instance_id: str,
    payload: DeploymentSpec,
    session: AsyncSession = Depends(get_db_session),
    allocator: RotationAllocator = Depends(get_rotation_allocator),
) -> List[AssignedRotationOut]:
    try:
        rotations = await assign_rotations_for_instance(session, allocator, instance_id, payload)
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ResourceExhaustionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except (LockTimeoutError, LockStateError) as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return [AssignedRotationOut.from_assigned(instance_id, item) for item in rotations]


@router.delete("/instances/{instance_id}/rotations")
async def remove_instance_rotations(
    instance_id: str,
    session: AsyncSession = Depends(get_db_session),
) -> Dict[str, int]:
    removed = await assignment_service.remove_instance(session, instance_id)
    return {"removed": removed}

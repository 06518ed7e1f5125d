from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict


@dataclass(frozen=True, order=True)
class RotationId:
    value: str

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class EndpointId:
    value: str

    @classmethod
    def default(cls) -> "EndpointId":
        return cls("default")

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Rotation:
    id: RotationId
    dns_target: str


@dataclass(frozen=True)
class AssignedRotation:
    cluster_id: str
    endpoint_id: EndpointId
    rotation_id: RotationId
    regions: FrozenSet[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class Instance:
    """An application instance as seen by rotation allocation."""

    instance_id: str
    name: str
    rotations: Tuple[AssignedRotation, ...] = ()


class RotationOut(BaseModel):
    id: str
    dns_target: str

    @classmethod
    def from_rotation(cls, rotation: Rotation) -> "RotationOut":
        return cls(id=str(rotation.id), dns_target=rotation.dns_target)


class AssignedRotationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    instance_id: Optional[str] = None
    cluster_id: str
    endpoint_id: str
    rotation_id: str
    regions: List[str]
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_assigned(cls, instance_id: str, assigned: AssignedRotation) -> "AssignedRotationOut":
        return cls(
            instance_id=instance_id,
            cluster_id=assigned.cluster_id,
            endpoint_id=str(assigned.endpoint_id),
            rotation_id=str(assigned.rotation_id),
            regions=sorted(assigned.regions),
        )

from __future__ import annotations

from typing import List

from sqlalchemy import JSON, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from controlplane.models.base import Base, TimestampMixin


class RotationAssignment(TimestampMixin, Base):
    __tablename__ = "assigned_rotations"
    __table_args__ = (UniqueConstraint("rotation_id", name="uq_assigned_rotations_rotation_id"),)

    instance_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    endpoint_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    # Index of the endpoint in the instance's declaration.
    position: Mapped[int] = mapped_column(Integer, default=0)
    cluster_id: Mapped[str] = mapped_column(String(64))
    rotation_id: Mapped[str] = mapped_column(String(64), index=True)
    regions: Mapped[List[str]] = mapped_column(JSON, default=list)

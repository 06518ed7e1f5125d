from __future__ import annotations

from typing import List, Optional

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from controlplane.models.base import Base, TimestampMixin


class LoadBalancerRecord(TimestampMixin, Base):
    __tablename__ = "load_balancers"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    owner: Mapped[str] = mapped_column(String(255), index=True)
    cluster_id: Mapped[str] = mapped_column(String(64))
    state: Mapped[str] = mapped_column(String(32))
    instance_hostname: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    networks: Mapped[List[str]] = mapped_column(JSON, default=list)

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

PRODUCTION_ENVIRONMENTS = {"prod"}


class ZoneSpec(BaseModel):
    environment: str
    region: Optional[str] = None

    @field_validator("environment")
    @classmethod
    def normalize_environment(cls, value: str) -> str:
        return value.strip().lower()

    @property
    def is_production(self) -> bool:
        return self.environment in PRODUCTION_ENVIRONMENTS


class EndpointSpec(BaseModel):
    endpoint_id: str = "default"
    container_id: str
    regions: List[str] = Field(default_factory=list)


class DeploymentSpec(BaseModel):
    """Rotation-relevant part of one instance's deployment declaration."""

    instance: str = "default"
    global_service_id: Optional[str] = None
    zones: List[ZoneSpec] = Field(default_factory=list)
    endpoints: List[EndpointSpec] = Field(default_factory=list)

    @field_validator("global_service_id")
    @classmethod
    def blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None

    def production_regions(self) -> List[str]:
        regions: List[str] = []
        for zone in self.zones:
            if zone.is_production and zone.region and zone.region not in regions:
                regions.append(zone.region)
        return regions

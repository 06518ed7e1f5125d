from __future__ import annotations

from pathlib import Path
from types import MappingProxyType
from typing import Iterator, Mapping, Tuple

import yaml

from controlplane.errors import ConfigurationError
from controlplane.logger import get_logger
from controlplane.schemas.rotations import Rotation, RotationId

_logger = get_logger("services.rotation_pool")


class RotationPool:
    """Every rotation this system can hand out, ordered by rotation id.

    Membership is fixed when the pool is built; nothing adds or removes
    rotations at runtime.
    """

    def __init__(self, rotations: Mapping[str, str]) -> None:
        entries = sorted(
            (
                Rotation(id=RotationId(str(key).strip()), dns_target=str(value).strip())
                for key, value in rotations.items()
            ),
            key=lambda rotation: rotation.id,
        )
        self._rotations: Mapping[RotationId, Rotation] = MappingProxyType(
            {rotation.id: rotation for rotation in entries}
        )

    def get(self, rotation_id: RotationId) -> Rotation:
        return self._rotations[rotation_id]

    def ids(self) -> Tuple[RotationId, ...]:
        return tuple(self._rotations)

    def as_mapping(self) -> Mapping[RotationId, Rotation]:
        return self._rotations

    def __contains__(self, rotation_id: object) -> bool:
        return rotation_id in self._rotations

    def __iter__(self) -> Iterator[Rotation]:
        return iter(self._rotations.values())

    def __len__(self) -> int:
        return len(self._rotations)

    def __bool__(self) -> bool:
        return bool(self._rotations)


def _parse_rotation_map(parsed: object, source: str) -> dict[str, str]:
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise ConfigurationError(f"Rotation config must be a mapping: {source}", subject=source)
    rotations = parsed.get("rotations", parsed)
    if rotations is None:
        return {}
    if not isinstance(rotations, dict):
        raise ConfigurationError(f"'rotations' must map rotation id to DNS target: {source}", subject=source)
    result: dict[str, str] = {}
    for key, value in rotations.items():
        rotation_id = str(key).strip()
        dns_target = str(value or "").strip()
        if not rotation_id or not dns_target:
            raise ConfigurationError(
                f"Rotation entries need both an id and a DNS target: {source}",
                subject=source,
            )
        result[rotation_id] = dns_target
    return result


def load_rotation_pool(path: str | Path) -> RotationPool:
    file_path = Path(path)
    if not file_path.exists():
        _logger.warning(
            "rotation_pool.missing",
            "Rotation config not found; no rotations are available",
            path=str(file_path),
        )
        return RotationPool({})
    parsed = yaml.safe_load(file_path.read_text(encoding="utf-8"))
    pool = RotationPool(_parse_rotation_map(parsed, str(file_path)))
    _logger.info("rotation_pool.load", "Loaded rotation pool", path=str(file_path), count=len(pool))
    return pool

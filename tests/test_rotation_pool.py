from __future__ import annotations

from pathlib import Path

import pytest

from controlplane.errors import ConfigurationError
from controlplane.schemas.rotations import RotationId
from controlplane.services.rotation_pool import RotationPool, load_rotation_pool


def test_pool_orders_rotations_by_id() -> None:
    pool = RotationPool({" rotation-id-03 ": " c.example. ", "rotation-id-01": "a.example.", "rotation-id-02": "b."})

    assert [str(rotation_id) for rotation_id in pool.ids()] == ["rotation-id-01", "rotation-id-02", "rotation-id-03"]
    assert pool.get(RotationId("rotation-id-03")).dns_target == "c.example."
    assert RotationId("rotation-id-02") in pool
    assert len(pool) == 3


def test_pool_mapping_is_read_only() -> None:
    pool = RotationPool({"A": "a."})
    with pytest.raises(TypeError):
        pool.as_mapping()[RotationId("B")] = None  # type: ignore[index]


def test_empty_pool_is_falsy() -> None:
    assert not RotationPool({})


def test_load_rotation_pool_from_yaml(tmp_path: Path) -> None:
    path = tmp_path / "rotations.yaml"
    path.write_text(
        "rotations:\n"
        "  rotation-id-02: rotation-fqdn-02\n"
        "  rotation-id-01: rotation-fqdn-01\n",
        encoding="utf-8",
    )

    pool = load_rotation_pool(path)

    assert [(str(rotation.id), rotation.dns_target) for rotation in pool] == [
        ("rotation-id-01", "rotation-fqdn-01"),
        ("rotation-id-02", "rotation-fqdn-02"),
    ]


def test_load_rotation_pool_accepts_bare_mapping(tmp_path: Path) -> None:
    path = tmp_path / "rotations.yaml"
    path.write_text("r1: one.example.\n", encoding="utf-8")

    assert [str(rotation_id) for rotation_id in load_rotation_pool(path).ids()] == ["r1"]


def test_missing_rotation_file_gives_empty_pool(tmp_path: Path) -> None:
    assert len(load_rotation_pool(tmp_path / "missing.yaml")) == 0


@pytest.mark.parametrize(
    "content",
    [
        "- r1\n- r2\n",
        "rotations:\n  - r1\n",
        "rotations:\n  r1: ''\n",
    ],
)
def test_malformed_rotation_file_is_rejected(tmp_path: Path, content: str) -> None:
    path = tmp_path / "rotations.yaml"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_rotation_pool(path)

from __future__ import annotations

from pathlib import Path
from typing import AsyncIterator, Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from controlplane.dependencies import get_db_session, get_rotation_allocator
from controlplane.main import app
from controlplane.models import Base
from controlplane.services.rotation_lock import LocalRotationLockManager
from controlplane.services.rotation_pool import RotationPool
from controlplane.services.rotations import RotationAllocator


@pytest.fixture
def client(tmp_path: Path) -> Iterator[TestClient]:
    db_path = (tmp_path / "api.db").as_posix()
    schema_engine = create_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(schema_engine)
    schema_engine.dispose()

    # Each request runs on its own event loop, so connections are not pooled.
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)
    sessionmaker = async_sessionmaker(bind=engine, expire_on_commit=False)
    allocator = RotationAllocator(
        RotationPool({"rotation-id-01": "rotation-fqdn-01", "rotation-id-02": "rotation-fqdn-02"}),
        LocalRotationLockManager(),
    )

    async def _session() -> AsyncIterator[AsyncSession]:
        async with sessionmaker() as session:
            yield session

    app.dependency_overrides[get_db_session] = _session
    app.dependency_overrides[get_rotation_allocator] = lambda: allocator
    yield TestClient(app)
    app.dependency_overrides.clear()


def _endpoints(*endpoint_ids: str) -> dict:
    return {
        "instance": "default",
        "endpoints": [
            {"endpoint_id": endpoint_id, "container_id": "qrs", "regions": ["us-east-1", "eu-west-1"]}
            for endpoint_id in endpoint_ids
        ],
    }


def test_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.headers["X-Request-ID"]


def test_assign_and_read_rotations(client: TestClient) -> None:
    response = client.post("/instances/tenant.app.default/rotations", json=_endpoints("e1"))
    assert response.status_code == 200
    body = response.json()
    assert [(item["endpoint_id"], item["rotation_id"]) for item in body] == [("e1", "rotation-id-01")]
    assert body[0]["regions"] == ["eu-west-1", "us-east-1"]

    stored = client.get("/instances/tenant.app.default/rotations").json()
    assert [(item["endpoint_id"], item["rotation_id"]) for item in stored] == [("e1", "rotation-id-01")]

    available = client.get("/rotations/available").json()
    assert available == [{"id": "rotation-id-02", "dns_target": "rotation-fqdn-02"}]
    assert len(client.get("/rotations").json()) == 2
    assert len(client.get("/rotations/assignments").json()) == 1


def test_conflicting_declaration_is_bad_request(client: TestClient) -> None:
    payload = _endpoints("e1")
    payload["global_service_id"] = "qrs"

    response = client.post("/instances/tenant.app.default/rotations", json=payload)

    assert response.status_code == 400
    assert "both global-service-id and 'endpoints'" in response.json()["detail"]


def test_exhausted_pool_is_conflict(client: TestClient) -> None:
    response = client.post("/instances/tenant.app.default/rotations", json=_endpoints("e1", "e2", "e3"))

    assert response.status_code == 409
    assert response.json()["detail"] == "Ran out of rotations, unable to assign rotation"
    assert client.get("/rotations/assignments").json() == []


def test_release_instance_rotations(client: TestClient) -> None:
    client.post("/instances/tenant.app.default/rotations", json=_endpoints("e1", "e2"))

    response = client.delete("/instances/tenant.app.default/rotations")

    assert response.json() == {"removed": 2}
    assert len(client.get("/rotations/available").json()) == 2


def test_node_acl_endpoints(client: TestClient) -> None:
    nodes = [
        {"hostname": "cfg1", "type": "config", "state": "active"},
        {"hostname": "host1", "type": "host", "state": "active"},
        {
            "hostname": "app1",
            "type": "tenant",
            "state": "active",
            "parent_hostname": "host1",
            "allocation": {"owner": "tenant1.app1", "cluster_id": "container"},
        },
    ]
    for node in nodes:
        assert client.put(f"/nodes/{node['hostname']}", json=node).status_code == 204
    response = client.put(
        "/load-balancers/lb1",
        json={
            "id": "lb1",
            "owner": "tenant1.app1",
            "cluster_id": "container",
            "instance_hostname": "lb1.example",
            "networks": ["10.4.5.0/24", "10.2.3.0/24"],
        },
    )
    assert response.status_code == 204

    acl = client.get("/nodes/acl/app1").json()
    assert [item["hostname"] for item in acl["trusted_nodes"]] == ["app1", "cfg1", "host1"]
    assert acl["trusted_networks"] == ["10.2.3.0/24", "10.4.5.0/24"]
    assert acl["trusted_ports"] == [22]

    assert client.get("/nodes/acl/host1").status_code == 400
    assert client.get("/nodes/acl/missing").status_code == 404
    assert [item["hostname"] for item in client.get("/nodes/acl").json()] == ["app1", "cfg1"]

    assert client.delete("/nodes/app1").status_code == 204
    assert client.delete("/nodes/app1").status_code == 404


def test_node_path_must_match_body(client: TestClient) -> None:
    response = client.put("/nodes/other", json={"hostname": "cfg1", "type": "config", "state": "active"})
    assert response.status_code == 400


def test_assignment_changes_are_audited(client: TestClient) -> None:
    client.post("/instances/tenant.app.default/rotations", json=_endpoints("e1"))
    client.post("/instances/tenant.app.default/rotations", json=_endpoints("e1"))
    client.delete("/instances/tenant.app.default/rotations")

    events = client.get("/events", params={"category": "rotations"}).json()

    assert sorted(event["name"] for event in events) == ["rotations.assign", "rotations.release"]
    assign = next(event for event in events if event["name"] == "rotations.assign")
    assert assign["fields"]["rotations"] == {"e1": "rotation-id-01"}

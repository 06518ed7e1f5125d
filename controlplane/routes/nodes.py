from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from controlplane.dependencies import get_db_session
from controlplane.errors import ConfigurationError
from controlplane.schemas.topology import LoadBalancerUpsert, NodeAclOut, NodeUpsert
from controlplane.services import node_acl as node_acl_service
from controlplane.services import topology as topology_service

router = APIRouter(tags=["nodes"])


@router.put("/nodes/{hostname}", status_code=status.HTTP_204_NO_CONTENT)
async def put_node(
    hostname: str,
    payload: NodeUpsert,
    session: AsyncSession = Depends(get_db_session),
) -> None:
    if payload.hostname != hostname:
        raise HTTPException(status_code=400, detail="Hostname in path and body must match")
    await topology_service.upsert_node(session, payload)


@router.delete("/nodes/{hostname}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_node(
    hostname: str,
    session: AsyncSession = Depends(get_db_session),
) -> None:
    node = await topology_service.get_node(session, hostname)
    if node is None:
        raise HTTPException(status_code=404, detail="Node not found")
    await topology_service.remove_node(session, node)


@router.put("/load-balancers/{load_balancer_id}", status_code=status.HTTP_204_NO_CONTENT)
async def put_load_balancer(
    load_balancer_id: str,
    payload: LoadBalancerUpsert,
    session: AsyncSession = Depends(get_db_session),
) -> None:
    if payload.id != load_balancer_id:
        raise HTTPException(status_code=400, detail="Load balancer id in path and body must match")
    await topology_service.upsert_load_balancer(session, payload)


@router.get("/nodes/acl", response_model=List[NodeAclOut])
async def list_node_acls(
    hostname: Optional[List[str]] = Query(default=None),
    session: AsyncSession = Depends(get_db_session),
) -> List[NodeAclOut]:
    topology = await topology_service.load_topology(session)
    try:
        acls = node_acl_service.compute_acls(topology, hostname)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [NodeAclOut.from_acl(acl) for acl in acls]


@router.get("/nodes/acl/{hostname}", response_model=NodeAclOut)
async def get_node_acl(
    hostname: str,
    session: AsyncSession = Depends(get_db_session),
) -> NodeAclOut:
    try:
        acl = await node_acl_service.acl_for_hostname(session, hostname)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return NodeAclOut.from_acl(acl)

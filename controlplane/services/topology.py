from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from controlplane.logger import get_logger
from controlplane.models.load_balancer import LoadBalancerRecord
from controlplane.models.node import NodeRecord
from controlplane.schemas.topology import (
    Allocation,
    LoadBalancer,
    LoadBalancerInstance,
    LoadBalancerUpsert,
    Node,
    NodeState,
    NodeType,
    NodeUpsert,
)
from controlplane.services.events import record_event

_logger = get_logger("services.topology")


@dataclass(frozen=True)
class NodeTopologyView:
    """Immutable snapshot of every node in the zone and its load balancers."""

    nodes: Tuple[Node, ...]
    load_balancers: Tuple[LoadBalancer, ...] = ()
    _by_hostname: Dict[str, Node] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_by_hostname", {node.hostname: node for node in self.nodes})

    def node(self, hostname: str) -> Optional[Node]:
        return self._by_hostname.get(hostname)

    def parent_of(self, node: Node) -> Optional[Node]:
        if not node.parent_hostname:
            return None
        return self._by_hostname.get(node.parent_hostname)

    def parents_of(self, nodes: Iterable[Node]) -> List[Node]:
        parents: List[Node] = []
        for node in nodes:
            parent = self.parent_of(node)
            if parent is not None:
                parents.append(parent)
        return parents

    def owned_by(self, owner: str) -> List[Node]:
        return [
            node for node in self.nodes if node.allocation is not None and node.allocation.owner == owner
        ]

    def of_type(self, node_type: NodeType) -> List[Node]:
        return [node for node in self.nodes if node.type == node_type]

    def load_balancer_networks(self, owner: str) -> FrozenSet[str]:
        networks: set[str] = set()
        for load_balancer in self.load_balancers:
            if load_balancer.owner != owner or load_balancer.instance is None:
                continue
            networks.update(load_balancer.instance.networks)
        return frozenset(networks)


def to_node(row: NodeRecord) -> Node:
    allocation = None
    if row.owner:
        allocation = Allocation(owner=row.owner, cluster_id=row.cluster_id or "")
    return Node(
        hostname=row.hostname,
        type=NodeType(row.type),
        state=NodeState(row.state),
        parent_hostname=row.parent_hostname or None,
        allocation=allocation,
    )


def to_load_balancer(row: LoadBalancerRecord) -> LoadBalancer:
    instance = None
    if row.instance_hostname:
        instance = LoadBalancerInstance(
            hostname=row.instance_hostname,
            networks=frozenset(row.networks or []),
        )
    return LoadBalancer(
        id=row.id,
        owner=row.owner,
        cluster_id=row.cluster_id,
        state=row.state,
        instance=instance,
    )


async def load_topology(session: AsyncSession) -> NodeTopologyView:
    async with _logger.operation("topology.load", "Loading node topology snapshot") as op:
        node_rows = await session.execute(select(NodeRecord).order_by(NodeRecord.hostname.asc()))
        nodes = tuple(to_node(row) for row in node_rows.scalars().all())
        op.step("db.select", "Fetched nodes", count=len(nodes))
        lb_rows = await session.execute(select(LoadBalancerRecord).order_by(LoadBalancerRecord.id.asc()))
        load_balancers = tuple(to_load_balancer(row) for row in lb_rows.scalars().all())
        op.step("db.select", "Fetched load balancers", count=len(load_balancers))
        return NodeTopologyView(nodes=nodes, load_balancers=load_balancers)


async def get_node(session: AsyncSession, hostname: str) -> Optional[NodeRecord]:
    result = await session.execute(select(NodeRecord).where(NodeRecord.hostname == hostname))
    return result.scalar_one_or_none()


async def upsert_node(session: AsyncSession, payload: NodeUpsert) -> NodeRecord:
    async with _logger.operation(
        "node.upsert",
        "Registering node",
        hostname=payload.hostname,
        type=payload.type.value,
        state=payload.state.value,
    ) as op:
        node = await get_node(session, payload.hostname)
        if node is None:
            node = NodeRecord(hostname=payload.hostname)
            session.add(node)
            op.step("db.insert", "Prepared node row")
        node.type = payload.type.value
        node.state = payload.state.value
        node.parent_hostname = payload.parent_hostname
        node.owner = payload.allocation.owner if payload.allocation else None
        node.cluster_id = payload.allocation.cluster_id if payload.allocation else None
        await record_event(
            session,
            "nodes",
            "node.upsert",
            fields={"hostname": payload.hostname, "state": payload.state.value},
        )
        await session.commit()
        await session.refresh(node)
        op.step("db.commit", "Committed node")
        return node


async def remove_node(session: AsyncSession, node: NodeRecord) -> None:
    hostname = node.hostname
    await session.delete(node)
    await record_event(
        session,
        "nodes",
        "node.remove",
        fields={"hostname": hostname},
    )
    await session.commit()
    _logger.info("nodes.remove", "Removed node", hostname=hostname)


async def upsert_load_balancer(session: AsyncSession, payload: LoadBalancerUpsert) -> LoadBalancerRecord:
    result = await session.execute(select(LoadBalancerRecord).where(LoadBalancerRecord.id == payload.id))
    load_balancer = result.scalar_one_or_none()
    if load_balancer is None:
        load_balancer = LoadBalancerRecord(id=payload.id)
        session.add(load_balancer)
    load_balancer.owner = payload.owner
    load_balancer.cluster_id = payload.cluster_id
    load_balancer.state = payload.state
    load_balancer.instance_hostname = payload.instance_hostname
    load_balancer.networks = list(payload.networks)
    await session.commit()
    await session.refresh(load_balancer)
    _logger.info(
        "load_balancers.upsert",
        "Registered load balancer",
        load_balancer_id=payload.id,
        owner=payload.owner,
        networks=len(payload.networks),
    )
    return load_balancer

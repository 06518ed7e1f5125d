"""Node ACLs: which nodes, networks and ports a node should trust.

An ACL is derived from the node's type, state and allocation within a
topology snapshot. Computing one does no I/O and takes no lock.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from controlplane.errors import ConfigurationError
from controlplane.logger import get_logger
from controlplane.metrics import record_acl_computation
from controlplane.schemas.topology import Node, NodeAcl, NodeState, NodeType
from controlplane.services.topology import NodeTopologyView, load_topology

_logger = get_logger("services.node_acl")

SSH_PORT = 22
HTTPS_PORT = 443
HEALTH_AND_API_PORT = 4443
ACL_NODE_TYPES = frozenset({NodeType.tenant, NodeType.config, NodeType.proxy, NodeType.controller})


def compute_node_acl(node: Node, topology: NodeTopologyView) -> NodeAcl:
    trusted: Dict[str, Node] = {}
    trusted_networks: set[str] = set()
    trusted_ports: set[int] = {SSH_PORT}

    def trust(nodes: Iterable[Node]) -> None:
        for item in nodes:
            trusted[item.hostname] = item

    # Every node trusts its parent host (health checks, metrics), the other
    # nodes of its application and the load balancers in front of it.
    parent = topology.parent_of(node)
    if parent is not None:
        trust([parent])
    allocation = node.allocation
    if allocation is not None:
        trust(topology.owned_by(allocation.owner))
        trusted_networks.update(topology.load_balancer_networks(allocation.owner))

    match node.type:
        case NodeType.tenant:
            trust(topology.of_type(NodeType.config))
            trust(topology.of_type(NodeType.proxy))
            if allocation is not None:
                # Traffic between application nodes may be NAT-ed through
                # their parents when IP versions differ.
                trust(topology.parents_of(topology.owned_by(allocation.owner)))
            if node.state == NodeState.ready:
                # A ready node can be allocated before its new ACL is
                # applied, so it trusts every tenant node until then.
                trust(topology.of_type(NodeType.tenant))
        case NodeType.config:
            trust(topology.nodes)
            trusted_ports.add(HEALTH_AND_API_PORT)
        case NodeType.proxy:
            trust(topology.of_type(NodeType.config))
            trusted_ports.add(HTTPS_PORT)
            trusted_ports.add(HEALTH_AND_API_PORT)
        case NodeType.controller:
            trusted_ports.add(HEALTH_AND_API_PORT)
            trusted_ports.add(HTTPS_PORT)
        case _:
            record_acl_computation(node_type=node.type.value, ok=False)
            raise ConfigurationError(
                f"Don't know how to create ACL for {node.hostname} of type {node.type.value}",
                subject=node.hostname,
            )

    record_acl_computation(node_type=node.type.value, ok=True)
    return NodeAcl(
        node=node,
        trusted_nodes=tuple(trusted[hostname] for hostname in sorted(trusted)),
        trusted_networks=frozenset(trusted_networks),
        trusted_ports=frozenset(trusted_ports),
    )


def compute_acls(
    topology: NodeTopologyView,
    hostnames: Optional[Iterable[str]] = None,
) -> List[NodeAcl]:
    """ACLs for the given hosts, or for every node that has an ACL of its own."""
    with _logger.operation("node_acl.compute", "Computing node ACLs") as op:
        if hostnames is None:
            targets = [node for node in topology.nodes if node.type in ACL_NODE_TYPES]
        else:
            targets = []
            for hostname in hostnames:
                node = topology.node(hostname)
                if node is None:
                    raise LookupError(f"No node with hostname '{hostname}'")
                targets.append(node)
        acls = [compute_node_acl(node, topology) for node in targets]
        op.step("compute.done", "Computed node ACLs", count=len(acls))
        return acls


async def acl_for_hostname(session: AsyncSession, hostname: str) -> NodeAcl:
    topology = await load_topology(session)
    node = topology.node(hostname)
    if node is None:
        raise LookupError(f"No node with hostname '{hostname}'")
    acl = compute_node_acl(node, topology)
    _logger.debug(
        "node_acl.compute",
        "Computed node ACL",
        hostname=hostname,
        trusted_nodes=len(acl.trusted_nodes),
        trusted_networks=len(acl.trusted_networks),
        trusted_ports=len(acl.trusted_ports),
    )
    return acl

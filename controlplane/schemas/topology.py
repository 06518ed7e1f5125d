from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, Field


class NodeType(str, Enum):
    tenant = "tenant"
    config = "config"
    proxy = "proxy"
    controller = "controller"
    host = "host"


class NodeState(str, Enum):
    provisioned = "provisioned"
    ready = "ready"
    reserved = "reserved"
    active = "active"
    inactive = "inactive"
    dirty = "dirty"
    failed = "failed"
    parked = "parked"
    deprovisioned = "deprovisioned"


@dataclass(frozen=True)
class Allocation:
    owner: str
    cluster_id: str


@dataclass(frozen=True)
class Node:
    hostname: str
    type: NodeType
    state: NodeState
    parent_hostname: Optional[str] = None
    allocation: Optional[Allocation] = None


@dataclass(frozen=True)
class LoadBalancerInstance:
    hostname: str
    networks: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class LoadBalancer:
    id: str
    owner: str
    cluster_id: str
    state: str
    instance: Optional[LoadBalancerInstance] = None


@dataclass(frozen=True)
class NodeAcl:
    """Nodes, networks and ports a node should trust. Derived, never stored."""

    node: Node
    trusted_nodes: Tuple[Node, ...]
    trusted_networks: FrozenSet[str]
    trusted_ports: FrozenSet[int]


class AllocationIn(BaseModel):
    owner: str
    cluster_id: str


class NodeUpsert(BaseModel):
    hostname: str
    type: NodeType
    state: NodeState
    parent_hostname: Optional[str] = None
    allocation: Optional[AllocationIn] = None


class LoadBalancerUpsert(BaseModel):
    id: str
    owner: str
    cluster_id: str
    state: str = "active"
    instance_hostname: Optional[str] = None
    networks: List[str] = Field(default_factory=list)


class TrustedNodeOut(BaseModel):
    hostname: str
    type: NodeType
    state: NodeState


class NodeAclOut(BaseModel):
    hostname: str
    trusted_nodes: List[TrustedNodeOut]
    trusted_networks: List[str]
    trusted_ports: List[int]

    @classmethod
    def from_acl(cls, acl: NodeAcl) -> "NodeAclOut":
        return cls(
            hostname=acl.node.hostname,
            trusted_nodes=[
                TrustedNodeOut(hostname=node.hostname, type=node.type, state=node.state)
                for node in acl.trusted_nodes
            ],
            trusted_networks=sorted(acl.trusted_networks),
            trusted_ports=sorted(acl.trusted_ports),
        )

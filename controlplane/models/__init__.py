from controlplane.models.assigned_rotation import RotationAssignment
from controlplane.models.base import Base
from controlplane.models.event import Event
from controlplane.models.load_balancer import LoadBalancerRecord
from controlplane.models.node import NodeRecord
from controlplane.models.rotation_lock import RotationLockLease

__all__ = [
    "Base",
    "Event",
    "LoadBalancerRecord",
    "NodeRecord",
    "RotationAssignment",
    "RotationLockLease",
]

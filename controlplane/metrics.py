from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

_REQ_COUNT = Counter(
    "controlplane_http_requests_total",
    "Total HTTP requests",
    labelnames=("method", "path", "status"),
)
_REQ_LATENCY = Histogram(
    "controlplane_http_request_duration_seconds",
    "HTTP request latency seconds",
    labelnames=("method", "path"),
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.3, 0.5, 1.0, 2.5, 5.0, 10.0),
)
_ROTATION_ASSIGNMENTS = Counter(
    "controlplane_rotation_assignments_total",
    "Endpoint rotation assignments computed",
    labelnames=("kind",),
)
_ROTATION_EXHAUSTED = Counter(
    "controlplane_rotation_pool_exhausted_total",
    "Assignment attempts that found no available rotation",
)
_LOCK_WAIT = Histogram(
    "controlplane_rotation_lock_wait_seconds",
    "Time spent waiting for the rotation lock",
    labelnames=("backend", "result"),
    buckets=(0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0),
)
_ACL_COMPUTATIONS = Counter(
    "controlplane_node_acl_computations_total",
    "Node ACL computations",
    labelnames=("node_type", "result"),
)


def observe_http_request(*, method: str, path: str, status: int, duration_seconds: float) -> None:
    _REQ_COUNT.labels(method=method, path=path, status=str(status)).inc()
    _REQ_LATENCY.labels(method=method, path=path).observe(duration_seconds)


def record_rotation_assignment(*, reused: bool) -> None:
    _ROTATION_ASSIGNMENTS.labels(kind="reused" if reused else "new").inc()


def record_rotation_exhausted() -> None:
    _ROTATION_EXHAUSTED.inc()


def observe_lock_wait(*, backend: str, ok: bool, duration_seconds: float) -> None:
    _LOCK_WAIT.labels(backend=backend, result="ok" if ok else "error").observe(duration_seconds)


def record_acl_computation(*, node_type: str, ok: bool) -> None:
    _ACL_COMPUTATIONS.labels(node_type=node_type, result="ok" if ok else "error").inc()


def render_metrics() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST

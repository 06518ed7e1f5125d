from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional
from urllib import error, parse, request

import yaml


def _api_request(
    *,
    base_url: str,
    path: str,
    method: str = "GET",
    json_body: Optional[Dict[str, Any]] = None,
) -> Any:
    url = base_url.rstrip("/") + path
    headers: Dict[str, str] = {"Accept": "application/json"}
    data: Optional[bytes] = None

    if json_body is not None:
        data = json.dumps(json_body).encode("utf-8")
        headers["Content-Type"] = "application/json"

    req = request.Request(url=url, method=method.upper(), data=data, headers=headers)
    try:
        with request.urlopen(req, timeout=60) as response:
            body = response.read().decode("utf-8")
            return json.loads(body) if body else {}
    except error.HTTPError as exc:
        payload = exc.read().decode("utf-8")
        detail = payload
        try:
            parsed = json.loads(payload)
            if isinstance(parsed, dict) and "detail" in parsed:
                detail = str(parsed["detail"])
        except json.JSONDecodeError:
            pass
        raise RuntimeError(f"HTTP {exc.code}: {detail}") from exc


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


def _load_spec(path: str) -> Dict[str, Any]:
    raw = Path(path).read_text(encoding="utf-8")
    parsed = yaml.safe_load(raw) if path.endswith((".yaml", ".yml")) else json.loads(raw)
    if not isinstance(parsed, dict):
        raise RuntimeError(f"Deployment spec must be a mapping: {path}")
    return parsed


def cmd_rotations(args: argparse.Namespace) -> int:
    path = "/rotations/available" if args.available else "/rotations"
    _print_json(_api_request(base_url=args.api_url, path=path))
    return 0


def cmd_assignments(args: argparse.Namespace) -> int:
    _print_json(_api_request(base_url=args.api_url, path="/rotations/assignments"))
    return 0


def cmd_assign(args: argparse.Namespace) -> int:
    instance_id = parse.quote(args.instance_id, safe="")
    result = _api_request(
        base_url=args.api_url,
        path=f"/instances/{instance_id}/rotations",
        method="POST",
        json_body=_load_spec(args.spec),
    )
    _print_json(result)
    return 0


def cmd_release(args: argparse.Namespace) -> int:
    instance_id = parse.quote(args.instance_id, safe="")
    result = _api_request(
        base_url=args.api_url,
        path=f"/instances/{instance_id}/rotations",
        method="DELETE",
    )
    _print_json(result)
    return 0


def cmd_acl(args: argparse.Namespace) -> int:
    if args.hostname:
        hostname = parse.quote(args.hostname, safe="")
        result = _api_request(base_url=args.api_url, path=f"/nodes/acl/{hostname}")
    else:
        result = _api_request(base_url=args.api_url, path="/nodes/acl")
    _print_json(result)
    return 0


def cmd_events(args: argparse.Namespace) -> int:
    query = {"limit": str(args.limit)}
    if args.category:
        query["category"] = args.category
    _print_json(_api_request(base_url=args.api_url, path="/events?" + parse.urlencode(query)))
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from controlplane.config import get_settings

    settings = get_settings()
    uvicorn.run(
        "controlplane.main:app",
        host=args.host or settings.server_host,
        port=args.port or settings.server_port,
        log_config=None,
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="controlplane")
    parser.add_argument("--api-url", default="http://127.0.0.1:8000")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the control plane API")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    serve.set_defaults(func=cmd_serve)

    rotations = sub.add_parser("rotations", help="List the rotation pool")
    rotations.add_argument("--available", action="store_true", help="Only unassigned rotations")
    rotations.set_defaults(func=cmd_rotations)

    assignments = sub.add_parser("assignments", help="List endpoint rotation assignments")
    assignments.set_defaults(func=cmd_assignments)

    assign = sub.add_parser("assign", help="Assign rotations to an instance's endpoints")
    assign.add_argument("instance_id")
    assign.add_argument("--spec", required=True, help="Deployment spec file (JSON or YAML)")
    assign.set_defaults(func=cmd_assign)

    release = sub.add_parser("release", help="Remove all rotation assignments of an instance")
    release.add_argument("instance_id")
    release.set_defaults(func=cmd_release)

    acl = sub.add_parser("acl", help="Show node ACLs")
    acl.add_argument("hostname", nargs="?")
    acl.set_defaults(func=cmd_acl)

    events = sub.add_parser("events", help="Show recent audit events")
    events.add_argument("--category", choices=["rotations", "nodes"])
    events.add_argument("--limit", type=int, default=50)
    events.set_defaults(func=cmd_events)

    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    try:
        exit_code = args.func(args)
    except Exception as exc:  # noqa: BLE001
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()

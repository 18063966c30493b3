from __future__ import annotations

import argparse
import asyncio
import json
import os
import socket
import sys
from pathlib import Path
from typing import Any, Dict, Optional
from urllib import error, request

from mcloud.authority import node_request_message, sign_node_request, signed_at_now
from mcloud.config import get_settings
from mcloud.constants import NodeRole, NodeStatus
from mcloud.services import lxd, microceph, microovn
from mcloud.services.adapters import SubsystemConfig
from mcloud.state_file import NodeStateFile

_IDENTITY_FILES = {
    "node_id": "node.id",
    "key": "node.key",
    "cert": "node.crt",
    "ca": "ca.crt",
}


def _api_request(
    *,
    base_url: str,
    path: str,
    method: str = "GET",
    json_body: Optional[Dict[str, Any]] = None,
    operator_token: Optional[str] = None,
    timeout_seconds: float = 15,
) -> Any:
    url = base_url.rstrip("/") + path
    headers: Dict[str, str] = {"Accept": "application/json"}
    data: Optional[bytes] = None

    if json_body is not None:
        data = json.dumps(json_body).encode("utf-8")
        headers["Content-Type"] = "application/json"

    if operator_token:
        headers["Authorization"] = f"Bearer {operator_token}"

    req = request.Request(url=url, method=method.upper(), data=data, headers=headers)
    try:
        with request.urlopen(req, timeout=timeout_seconds) as response:
            body = response.read().decode("utf-8")
            return json.loads(body) if body else {}
    except error.HTTPError as exc:
        payload = exc.read().decode("utf-8")
        detail = payload
        try:
            parsed = json.loads(payload)
            if isinstance(parsed, dict) and "detail" in parsed:
                detail = str(parsed["detail"])
                if parsed.get("error"):
                    detail = f"{parsed['error']}: {detail}"
        except json.JSONDecodeError:
            pass
        raise RuntimeError(f"HTTP {exc.code}: {detail}") from exc


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def detect_local_ip() -> str:
    # Connecting a UDP socket sends nothing; it only selects the outbound interface.
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        try:
            sock.connect(("8.8.8.8", 80))
            return str(sock.getsockname()[0])
        except OSError:
            return "127.0.0.1"


def _write_identity(identity_dir: str, *, node_id: str, key_pem: str, cert_pem: str, ca_pem: str) -> Dict[str, str]:
    path = Path(identity_dir)
    path.mkdir(parents=True, exist_ok=True)
    contents = {"node_id": node_id, "key": key_pem, "cert": cert_pem, "ca": ca_pem}
    written: Dict[str, str] = {}
    for kind, filename in _IDENTITY_FILES.items():
        target = path / filename
        target.write_text(contents[kind])
        if kind == "key":
            os.chmod(target, 0o600)
        written[kind] = str(target)
    return written


def _load_identity(identity_dir: str) -> Dict[str, str]:
    path = Path(identity_dir)
    identity: Dict[str, str] = {}
    for kind, filename in _IDENTITY_FILES.items():
        target = path / filename
        if not target.exists():
            raise RuntimeError(f"Missing node identity file: {target}")
        identity[kind] = target.read_text().strip() if kind == "node_id" else target.read_text()
    return identity


def _signed_body(identity: Dict[str, str], action: str) -> Dict[str, Any]:
    signed_at = signed_at_now()
    message = node_request_message(action=action, node_id=identity["node_id"], signed_at=signed_at)
    return {
        "node_id": identity["node_id"],
        "signed_at": signed_at,
        "signature": sign_node_request(key_pem=identity["key"], message=message),
    }


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run(
        "mcloud.main:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        log_config=None,
    )
    return 0


def cmd_init(args: argparse.Namespace) -> int:
    advertise = args.advertise_address or f"{detect_local_ip()}:{get_settings().control_plane_port}"
    response = _api_request(
        base_url=args.api_url,
        path=f"/cluster/init?wait={'false' if args.no_wait else 'true'}",
        method="POST",
        json_body={"name": args.name, "advertise_address": advertise, "hostname": args.hostname or ""},
        operator_token=args.operator_token,
        timeout_seconds=args.timeout,
    )
    _print_json(response)
    return 0


def cmd_token(args: argparse.Namespace) -> int:
    response = _api_request(
        base_url=args.api_url,
        path="/cluster/tokens",
        method="POST",
        json_body={"ttl_seconds": args.ttl},
        operator_token=args.operator_token,
    )
    _print_json(response)
    return 0


async def _join_local(config: SubsystemConfig, outputs: Dict[str, str]) -> Dict[str, bool]:
    settings = get_settings()
    # Same order the leader admitted the host in.
    return {
        "compute": await lxd.join_local(settings, config, outputs),
        "storage": await microceph.join_local(settings, config, outputs),
        "network": await microovn.join_local(settings, config, outputs),
    }


def cmd_join(args: argparse.Namespace) -> int:
    settings = get_settings()
    state_file = NodeStateFile(args.state_path)
    if state_file.is_initialized():
        raise RuntimeError(f"This node is already initialized ({args.state_path}); run reset-state first.")

    hostname = args.hostname or socket.gethostname()
    ip = args.ip or detect_local_ip()
    response = _api_request(
        base_url=args.api_url,
        path="/cluster/join",
        method="POST",
        json_body={"token": args.token, "node_info": {"hostname": hostname, "ip": ip}},
        timeout_seconds=args.timeout,
    )
    node_id = str(response["node_id"])
    paths = _write_identity(
        args.identity_dir,
        node_id=node_id,
        key_pem=str(response["node_key_pem"]),
        cert_pem=str(response["node_cert_pem"]),
        ca_pem=str(response["ca_cert_pem"]),
    )
    state_file.initialize(
        node_id=node_id,
        hostname=hostname,
        ip=ip,
        role=NodeRole.MEMBER.value,
        status=NodeStatus.JOINING.value,
        cluster_id=str(response["cluster_id"]),
        cluster_name=str(response.get("cluster_name", "")),
        advertise_addr=str(response.get("leader_address", "")),
    )

    local: Dict[str, bool] = {}
    if not args.skip_local_join:
        config = SubsystemConfig(
            cluster_name=str(response.get("cluster_name", "")),
            hostname=hostname,
            address=ip,
            port=settings.control_plane_port,
            storage_device=settings.storage_device,
            leader_address=str(response.get("leader_address", "")),
        )
        local = asyncio.run(_join_local(config, dict(response.get("subsystem_outputs") or {})))

    identity = _load_identity(args.identity_dir)
    heartbeat = _api_request(
        base_url=args.api_url,
        path="/cluster/heartbeat",
        method="POST",
        json_body=_signed_body(identity, "heartbeat"),
    )
    state_file.update_status(str(heartbeat.get("status", NodeStatus.JOINING.value)))

    response.pop("node_key_pem", None)
    response["identity_paths"] = paths
    response["local_join"] = local
    response["status"] = heartbeat.get("status")
    _print_json(response)
    return 0


def cmd_heartbeat(args: argparse.Namespace) -> int:
    identity = _load_identity(args.identity_dir)
    response = _api_request(
        base_url=args.api_url,
        path="/cluster/heartbeat",
        method="POST",
        json_body=_signed_body(identity, "heartbeat"),
    )
    _print_json(response)
    return 0


def cmd_leave(args: argparse.Namespace) -> int:
    identity = _load_identity(args.identity_dir)
    response = _api_request(
        base_url=args.api_url,
        path="/cluster/leave",
        method="POST",
        json_body=_signed_body(identity, "leave"),
        timeout_seconds=args.timeout,
    )
    NodeStateFile(args.state_path).reset()
    _print_json(response)
    return 0


def cmd_nodes(args: argparse.Namespace) -> int:
    path = "/nodes"
    if args.status:
        path = f"/nodes?status={args.status}"
    rows = _api_request(base_url=args.api_url, path=path, operator_token=args.operator_token)
    if args.json:
        _print_json(rows)
        return 0
    for row in rows:
        print(
            f"{row['id']}  {row['hostname']:<24} {row['ip']:<16} {row['role']:<7} "
            f"{row['status']}{' (draining)' if row.get('draining') else ''}"
        )
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    response = _api_request(
        base_url=args.api_url,
        path="/cluster?include_subsystems=true",
        operator_token=args.operator_token,
    )
    _print_json(response)
    return 0


def cmd_events(args: argparse.Namespace) -> int:
    path = f"/cluster/events?limit={args.limit}"
    if args.category:
        path = f"{path}&category={args.category}"
    _print_json(_api_request(base_url=args.api_url, path=path, operator_token=args.operator_token))
    return 0


def cmd_reset_state(args: argparse.Namespace) -> int:
    if not args.yes:
        raise RuntimeError("Refusing to remove the node state file without --yes.")
    removed = NodeStateFile(args.state_path).reset()
    _print_json({"state_path": args.state_path, "removed": removed})
    return 0


def build_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    parser = argparse.ArgumentParser(prog="mcloud", description="MCloud control plane")
    parser.add_argument("--api-url", default=f"http://127.0.0.1:{settings.server_port}")
    parser.add_argument("--operator-token", default=settings.operator_token or None)
    parser.add_argument("--state-path", default=settings.state_path)
    parser.add_argument("--timeout", type=float, default=600.0, help="Seconds to wait for long pipelines")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the control plane API server")
    serve.add_argument("--host", default=settings.server_host)
    serve.add_argument("--port", type=int, default=settings.server_port)
    serve.set_defaults(func=cmd_serve)

    init = sub.add_parser("init", help="Bootstrap a new cluster with this node as leader")
    init.add_argument("--name", required=True)
    init.add_argument("--advertise-address", help="ip:port; defaults to the outbound IP and control plane port")
    init.add_argument("--hostname")
    init.add_argument("--no-wait", action="store_true", help="Return an operation id instead of waiting")
    init.set_defaults(func=cmd_init)

    token = sub.add_parser("token", help="Issue a bootstrap token for a new member")
    token.add_argument("--ttl", type=int, default=settings.bootstrap_token_ttl_seconds)
    token.set_defaults(func=cmd_token)

    join = sub.add_parser("join", help="Join this host to an existing cluster")
    join.add_argument("--token", required=True)
    join.add_argument("--hostname")
    join.add_argument("--ip")
    join.add_argument("--identity-dir", default="data/identity")
    join.add_argument("--skip-local-join", action="store_true", help="Do not run subsystem joins on this host")
    join.set_defaults(func=cmd_join)

    heartbeat = sub.add_parser("heartbeat", help="Send a signed heartbeat for this node")
    heartbeat.add_argument("--identity-dir", default="data/identity")
    heartbeat.set_defaults(func=cmd_heartbeat)

    leave = sub.add_parser("leave", help="Remove this node from the cluster")
    leave.add_argument("--identity-dir", default="data/identity")
    leave.set_defaults(func=cmd_leave)

    nodes = sub.add_parser("nodes", help="List cluster nodes")
    nodes.add_argument("--status")
    nodes.add_argument("--json", action="store_true")
    nodes.set_defaults(func=cmd_nodes)

    status = sub.add_parser("status", help="Show cluster status")
    status.set_defaults(func=cmd_status)

    events = sub.add_parser("events", help="Show recent cluster events")
    events.add_argument("--limit", type=int, default=50)
    events.add_argument("--category")
    events.set_defaults(func=cmd_events)

    reset_state = sub.add_parser("reset-state", help="Delete the local node state file")
    reset_state.add_argument("--yes", action="store_true")
    reset_state.set_defaults(func=cmd_reset_state)

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

import argparse
import sys
from typing import List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8318"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _print_instances(data: dict) -> None:
    instances = data.get("instances") or []
    statuses = data.get("statuses") or {}
    if not instances:
        print("No instances configured.")
        return
    for inst in instances:
        status = statuses.get(inst.get("id")) or {}
        state = "running" if status.get("running") else "stopped"
        enabled = "" if inst.get("enabled") else " (disabled)"
        line = f"{inst.get('id')}  {inst.get('role'):<18} {inst.get('backend'):<10} :{inst.get('port')}  {state}{enabled}"
        print(line)
        print(f"    {inst.get('model')}")
        if status.get("error"):
            print(f"    error: {status['error']}")


def _print_models(models: List[dict]) -> None:
    if not models:
        print("No models found.")
        return
    for model in models:
        roles = ", ".join(model.get("recommended_roles") or [])
        extras = []
        if model.get("size"):
            extras.append(model["size"])
        if model.get("downloads") is not None:
            extras.append(f"{model['downloads']} downloads")
        if model.get("quantization"):
            extras.append(model["quantization"])
        suffix = f" [{'; '.join(extras)}]" if extras else ""
        print(f"{model.get('id')} ({model.get('backend')}){suffix}")
        print(f"    roles: {roles}")


def _request(client: httpx.Client, method: str, url: str, timeout: float = 30, **kwargs) -> Optional[dict]:
    resp = client.request(method, url, timeout=timeout, **kwargs)
    if resp.status_code >= 400:
        print(f"Request failed: HTTP {resp.status_code}")
        return None
    return resp.json()


def run_instances_list(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        data = _request(client, "GET", _join_url(args.base_url, "/api/instances"))
    if data is None:
        return 1
    _print_instances(data)
    return 0


def run_instances_start(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        data = _request(client, "POST", _join_url(args.base_url, f"/api/instances/{args.instance_id}/start"), timeout=120)
    if data is None:
        return 1
    if not data.get("ok"):
        print(f"Failed to start {args.instance_id}; see `logs` for details.")
        return 1
    print(f"Started {args.instance_id}")
    return 0


def run_instances_stop(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        data = _request(client, "POST", _join_url(args.base_url, f"/api/instances/{args.instance_id}/stop"))
    if data is None:
        return 1
    print(f"Stopped {args.instance_id}")
    return 0


def run_instances_start_all(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        data = _request(client, "POST", _join_url(args.base_url, "/api/instances/start-all"), timeout=300)
    if data is None:
        return 1
    print(f"Started {data.get('started', 0)}, failed {data.get('failed', 0)}")
    return 0 if not data.get("failed") else 1


def run_instances_stop_all(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        data = _request(client, "POST", _join_url(args.base_url, "/api/instances/stop-all"), timeout=120)
    if data is None:
        return 1
    print("Stopped all instances.")
    return 0


def run_models_discover(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        data = _request(client, "POST", _join_url(args.base_url, "/api/models/discover"), timeout=300)
    if data is None:
        return 1
    _print_models(data.get("models") or [])
    return 0


def run_models_search(args: argparse.Namespace) -> int:
    query = " ".join(args.query)
    with httpx.Client() as client:
        data = _request(
            client,
            "GET",
            _join_url(args.base_url, "/api/models/search"),
            params={"q": query, "backend": args.backend},
        )
    if data is None:
        return 1
    _print_models(data.get("models") or [])
    return 0


def run_logs(args: argparse.Namespace) -> int:
    params = {"tag": args.tag} if args.tag else None
    with httpx.Client() as client:
        data = _request(client, "GET", _join_url(args.base_url, "/api/logs"), params=params)
    if data is None:
        return 1
    entries = data.get("logs") or []
    if args.tail:
        entries = entries[-args.tail :]
    for entry in entries:
        print(entry.get("line") or entry.get("message"))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="SLM Manager CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    instances = subparsers.add_parser("instances", help="Model instance management")
    instances_sub = instances.add_subparsers(dest="instances_cmd")
    instances_sub.add_parser("list", help="List instances and their status")
    start = instances_sub.add_parser("start", help="Start one instance")
    start.add_argument("instance_id")
    stop = instances_sub.add_parser("stop", help="Stop one instance")
    stop.add_argument("instance_id")
    instances_sub.add_parser("start-all", help="Start every enabled auto-start instance")
    instances_sub.add_parser("stop-all", help="Stop every running instance")

    models = subparsers.add_parser("models", help="Model discovery")
    models_sub = models.add_subparsers(dest="models_cmd")
    models_sub.add_parser("discover", help="Scan local caches for installed models")
    search = models_sub.add_parser("search", help="Search the model hub")
    search.add_argument("--backend", default="mlx", help="Backend the results are for")
    search.add_argument("query", nargs="+", help="Search text (3+ characters)")

    logs = subparsers.add_parser("logs", help="Show supervisor logs")
    logs.add_argument("--tag", default=None, help="Only lines tagged with this role name")
    logs.add_argument("--tail", type=int, default=0, help="Show only the last N lines")

    return parser


_HANDLERS = {
    ("instances", "list"): run_instances_list,
    ("instances", "start"): run_instances_start,
    ("instances", "stop"): run_instances_stop,
    ("instances", "start-all"): run_instances_start_all,
    ("instances", "stop-all"): run_instances_stop_all,
    ("models", "discover"): run_models_discover,
    ("models", "search"): run_models_search,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "logs":
        return run_logs(args)
    sub = getattr(args, "instances_cmd", None) or getattr(args, "models_cmd", None)
    handler = _HANDLERS.get((args.command, sub))
    if handler is None:
        parser.print_help()
        return 1
    try:
        return handler(args)
    except httpx.RequestError as exc:
        print(f"Could not reach {args.base_url}: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())

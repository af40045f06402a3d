from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

import httpx

DEFAULT_URL = "http://127.0.0.1:8000"


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="teepool",
        description="Autoscaling pool of TEE workers.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the orchestrator HTTP server.")
    serve.add_argument("--host", help="Host to bind to (default: TEEPOOL_HOST).")
    serve.add_argument("--port", type=int, help="Port to listen on (default: TEEPOOL_PORT).")
    serve.add_argument("--log-level", default="INFO", help="Logging level.")

    # Client commands talk to a running server
    for name, help_text in (
        ("nodes", "List workers known to a running server."),
        ("stats", "Show pool statistics of a running server."),
        ("route", "Ask a running server for a worker endpoint."),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument(
            "--url",
            default=os.getenv("TEEPOOL_URL", DEFAULT_URL),
            help=f"Server base URL (default: {DEFAULT_URL}).",
        )
        cmd.add_argument(
            "--api-key",
            default=os.getenv("TEEPOOL_API_KEY"),
            help="X-API-Key value (default: TEEPOOL_API_KEY).",
        )
        cmd.add_argument("--timeout", type=float, default=70.0, help="Request timeout.")
        if name == "route":
            cmd.add_argument("--capability", help="Required worker capability.")

    return parser.parse_args(argv)


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    from teepool.config import get_settings

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    settings = get_settings()
    uvicorn.run(
        "teepool.server:app",
        host=args.host or settings.host,
        port=args.port or settings.port,
        log_level=args.log_level.lower(),
    )
    return 0


def _call(
    args: argparse.Namespace,
    method: str,
    path: str,
    payload: Optional[Dict[str, Any]] = None,
    client: Optional[httpx.Client] = None,
) -> Any:
    headers = {"X-API-Key": args.api_key} if args.api_key else {}
    owns_client = client is None
    if client is None:
        client = httpx.Client(base_url=args.url, timeout=args.timeout)
    try:
        response = client.request(method, path, json=payload, headers=headers)
    finally:
        if owns_client:
            client.close()

    if response.status_code >= 400:
        try:
            error = response.json().get("error", {})
            message = error.get("message") or response.text
        except ValueError:
            message = response.text
        raise RuntimeError(f"HTTP {response.status_code}: {message}")
    if path == "/metrics":
        return response.text
    return response.json()


def _print_nodes(data: Dict[str, Any]) -> None:
    nodes = data.get("nodes", [])
    if not nodes:
        print("no nodes")
        return
    for node in nodes:
        cold_start = node.get("cold_start_duration_ms")
        print(
            f"{node['id']:<20} {node['status']:<9} {node['endpoint'] or '-':<28} "
            f"served={node['requests_served']:<5} errors={node['error_count']:<3} "
            f"cold_start={'-' if cold_start is None else f'{cold_start:.0f}ms'}"
        )


def main(argv: Optional[List[str]] = None, client: Optional[httpx.Client] = None) -> int:
    args = _parse_args(argv)
    try:
        if args.command == "serve":
            return _serve(args)
        if args.command == "nodes":
            _print_nodes(_call(args, "GET", "/nodes", client=client))
        elif args.command == "stats":
            data = _call(args, "GET", "/stats", client=client)
            print(json.dumps(data, indent=2, ensure_ascii=True))
        else:
            data = _call(
                args,
                "POST",
                "/route",
                payload={"capability": args.capability},
                client=client,
            )
            print(json.dumps(data, ensure_ascii=True))
        return 0
    except Exception as exc:  # noqa: BLE001
        print(str(exc), file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

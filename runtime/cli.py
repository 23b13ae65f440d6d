"""
A2W Runtime: CLI

Usage:
    # Serve the REST + WebSocket surface
    python -m runtime.cli serve --host 0.0.0.0 --port 8080

    # Print this agent's manifest envelope
    python -m runtime.cli manifest

    # Validate configuration and print the effective settings
    python -m runtime.cli check-config --env prod

    # Read the action ledger of a SQLite store
    python -m runtime.cli logs --cursor 0 --limit 50
"""

import argparse
import dataclasses
import json
import sys

from a2w.envelope import to_json, wrap
from a2w.errors import ConfigError
from a2w.types import DataPayload
from runtime.config import RuntimeConfig, load_config
from runtime.logging import configure_logging


def _load(args) -> RuntimeConfig:
    try:
        return RuntimeConfig.from_dict(load_config(base_path=args.config, env=args.env))
    except ConfigError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(2)


def cmd_serve(args):
    """Run the HTTP/WebSocket server under uvicorn."""
    import uvicorn
    from api.server import create_app

    cfg = _load(args)
    configure_logging(level=cfg.log_level, agent_id=cfg.agent_id)
    app = create_app(config=cfg)
    uvicorn.run(app, host=args.host, port=args.port, log_level=cfg.log_level.lower())


def cmd_manifest(args):
    from runtime.core import AgentRuntime

    cfg = _load(args)
    runtime = AgentRuntime.from_config(cfg)
    try:
        print(to_json(wrap(runtime.agent.agent_id, DataPayload(runtime.manifest()), runtime.version)))
    finally:
        runtime.shutdown(wait=False)


def cmd_check_config(args):
    cfg = _load(args)
    print(json.dumps(dataclasses.asdict(cfg), indent=2, default=str))


def cmd_logs(args):
    from runtime.store import SQLiteStore

    cfg = _load(args)
    if cfg.store_backend != "sqlite":
        print("Error: logs can only be read from a sqlite store", file=sys.stderr)
        sys.exit(1)
    store = SQLiteStore(cfg.store_path or "a2w_runtime.db")
    try:
        entries, next_cursor = store.read_logs(args.cursor, args.limit, args.task)
    finally:
        store.close()
    for entry in entries:
        print(json.dumps(entry, default=str))
    print(f"next_cursor={next_cursor}", file=sys.stderr)


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="A2W Agent Runtime",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", default="", help="Base config YAML (default: config/runtime.yaml)")
    parser.add_argument("--env", default="", help="Overlay profile (default: $A2W_ENV)")

    subs = parser.add_subparsers(dest="command", help="Command")

    serve_p = subs.add_parser("serve", help="Serve REST and WebSocket endpoints")
    serve_p.add_argument("--host", default="127.0.0.1")
    serve_p.add_argument("--port", type=int, default=8080)

    subs.add_parser("manifest", help="Print the manifest envelope")
    subs.add_parser("check-config", help="Validate and print the effective config")

    logs_p = subs.add_parser("logs", help="Print action ledger entries")
    logs_p.add_argument("--cursor", type=int, default=0)
    logs_p.add_argument("--limit", type=int, default=100)
    logs_p.add_argument("--task", default=None, help="Filter by task id")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "manifest":
        cmd_manifest(args)
    elif args.command == "check-config":
        cmd_check_config(args)
    elif args.command == "logs":
        cmd_logs(args)


if __name__ == "__main__":
    main()

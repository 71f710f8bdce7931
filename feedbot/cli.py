"""
Command-line entry point.

    feedbot serve              run the webhook server (and scheduler loops)
    feedbot poll-once          run a single poll cycle and exit
    feedbot stats              print approval store statistics
    feedbot sweep [--days N]   drop aged-out approval candidates

`stats` and `sweep` work on the persisted snapshot directly. A running
server keeps its own copy in memory and rewrites the snapshot on every
change, so `sweep` refuses to run while the server answers on its port
(the server already sweeps daily); `--force` overrides.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import List, Optional

import httpx

from .common.config import load_config, ensure_directories
from .intake.approval_store import create_store

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

logger = logging.getLogger("feedbot.cli")


def _configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def _cmd_serve(args: argparse.Namespace) -> int:
    from .intake.server import run_server

    run_server(port=args.port)
    return 0


def _cmd_poll_once(args: argparse.Namespace) -> int:
    from .intake.server import build_components

    config = load_config()
    try:
        components = build_components(config)
    except RuntimeError as e:
        logger.error("Initialization failed: %s", e)
        return 1

    try:
        summary = asyncio.run(components.orchestrator.run_poll_cycle())
    finally:
        components.close()
    print(json.dumps(summary or {}, indent=2))
    return 0


def _server_running(port: int) -> bool:
    try:
        response = httpx.get(f"http://127.0.0.1:{port}/health", timeout=1.0)
    except httpx.HTTPError:
        return False
    return response.status_code == 200


def _cmd_stats(args: argparse.Namespace) -> int:
    config = load_config()
    store = create_store(config.store.backend, config.store.path)
    print(json.dumps(store.stats(), indent=2))
    return 0


def _cmd_sweep(args: argparse.Namespace) -> int:
    config = load_config()
    if not args.force and _server_running(config.server.port):
        logger.error(
            "A feedbot server is running on port %d; its next write would undo this sweep. "
            "Stop it first or pass --force.", config.server.port,
        )
        return 1

    store = create_store(config.store.backend, config.store.path)
    days = args.days if args.days is not None else config.scheduler.retention_days
    removed = store.sweep(days)
    print(f"Removed {removed} candidates older than {days} days")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="feedbot", description="Slack feedback triage bot")
    parser.add_argument("--log-level", default=os.getenv("FEEDBOT_LOG_LEVEL", "INFO"),
                        help="Logging level (default: $FEEDBOT_LOG_LEVEL or INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the webhook server")
    serve.add_argument("--port", type=int, default=None, help="Override the configured port")
    serve.set_defaults(func=_cmd_serve)

    poll = sub.add_parser("poll-once", help="Run a single poll cycle")
    poll.set_defaults(func=_cmd_poll_once)

    stats = sub.add_parser("stats", help="Print approval store statistics (last persisted snapshot)")
    stats.set_defaults(func=_cmd_stats)

    sweep = sub.add_parser("sweep", help="Remove aged-out approval candidates")
    sweep.add_argument("--days", type=float, default=None, help="Maximum age in days")
    sweep.add_argument("--force", action="store_true", help="Sweep even if a server is running")
    sweep.set_defaults(func=_cmd_sweep)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(args.log_level)
    ensure_directories()
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())

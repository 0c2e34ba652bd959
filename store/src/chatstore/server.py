"""Command-line entry point for the development backing store."""

from __future__ import annotations

import argparse
import logging
import sys

from aiohttp import web

from .config import StoreConfig
from .ws_transport import create_app

logger = logging.getLogger(__name__)


def build_parser(config: StoreConfig) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chatstore", description="Chat backing store")
    parser.add_argument("--log-level", default=config.log_level, help="Logging level (default: %(default)s)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp store server")
    serve_parser.add_argument("--host", default=config.host, help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=config.port, help="Port to bind")
    serve_parser.add_argument(
        "--ping-interval",
        type=int,
        default=config.ping_interval_s,
        help="Seconds between websocket heartbeat pings",
    )
    serve_parser.add_argument("--db", type=str, default=config.db_path, help="Path to SQLite database for durability")
    return parser


def _run_serve(args: argparse.Namespace, config: StoreConfig) -> int:
    app = create_app(ping_interval_s=args.ping_interval, max_msg_size=config.max_msg_size, db_path=args.db)
    logger.info("serving store on %s:%s (db=%s)", args.host, args.port, args.db or "memory")
    web.run_app(app, host=args.host, port=args.port, print=None)
    return 0


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    config = StoreConfig.from_env()
    args = build_parser(config).parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "serve":
        return _run_serve(args, config)
    return 2


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())

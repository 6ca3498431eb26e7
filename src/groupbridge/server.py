"""Command line entry point: run the bridge or sign a challenge for local testing."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import TextIO

from aiohttp import web

from .config import load_config
from .signer import load_signer
from .ws_transport import create_app


def _run_serve(args: argparse.Namespace) -> int:
    config = load_config()
    if args.host is not None:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.env is not None:
        config.env = args.env
    if args.cache_dir is not None:
        config.cache_dir = args.cache_dir
    if args.engine is not None:
        config.engine = args.engine
    if args.ping_interval is not None:
        config.ping_interval_s = args.ping_interval

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app(config)
    logging.getLogger(__name__).info("Server running on port %s", config.port)
    web.run_app(app, host=config.host, port=config.port, print=None)
    return 0


def _run_sign(args: argparse.Namespace, output: TextIO) -> int:
    signer = load_signer(args.key)
    text = args.text if args.text is not None else sys.stdin.read()
    signature = asyncio.run(signer.sign(text))
    output.write("0x" + signature.hex() + "\n")
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Group messaging bridge")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp bridge server")
    serve_parser.add_argument("--host", default=None, help="Host to bind (env HOST)")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind (env PORT)")
    serve_parser.add_argument("--env", default=None, help="Network environment tag (env XMTP_ENV)")
    serve_parser.add_argument("--cache-dir", default=None, help="Root for per-address storage (env CACHE_DIR)")
    serve_parser.add_argument(
        "--engine",
        default=None,
        help="Identity client factory: 'memory' or 'module:attribute' (env ENGINE)",
    )
    serve_parser.add_argument("--ping-interval", type=int, default=None, help="Seconds between heartbeat pings")
    serve_parser.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"])

    sign_parser = subparsers.add_parser("sign", help="Sign challenge text with a wallet key")
    sign_parser.add_argument("--key", required=True, help="Hex private key")
    sign_parser.add_argument("--text", default=None, help="Challenge text; defaults to stdin")

    args = parser.parse_args(argv)

    if args.command == "serve":
        return _run_serve(args)
    return _run_sign(args, output or sys.stdout)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())

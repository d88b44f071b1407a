#!/usr/bin/env python3
"""
DevTools MCP Bridge

Bridges stdio-based MCP protocol to the Obsidian DevTools plugin.
Usage:
    devtools-bridge bridge [--port-min 27125] [--port-max 27135] [--timeout 15]
    devtools-bridge service
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from pydantic import ValidationError

from . import __version__
from .config import Settings, get_settings
from .services.bridge import Bridge
from .services.supervisor import Supervisor
from .utils.errors import ConfigurationError
from .utils.unified_logger import setup_unified_logging

logger = logging.getLogger("devtools.main")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="devtools-bridge", description="Obsidian DevTools MCP Bridge")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    parser.add_argument("--state-dir", help="Directory for PID, port and log files")
    parser.add_argument("--no-log-file", action="store_true", help="Log to stderr only")

    sub = parser.add_subparsers(dest="command")

    bridge = sub.add_parser("bridge", help="Run the bridge directly (stdio <-> plugin socket)")
    bridge.add_argument("--host", help="Listen address for the plugin socket")
    bridge.add_argument("--port-min", type=int, help="Lowest port to try")
    bridge.add_argument("--port-max", type=int, help="Highest port to try")
    bridge.add_argument("--timeout", type=float, help="Per-request timeout in seconds")
    bridge.add_argument("--no-log-file", action="store_true", default=argparse.SUPPRESS, help=argparse.SUPPRESS)

    sub.add_parser("service", help="Run the bridge under the restarting supervisor")
    return parser


def resolve_settings(args: argparse.Namespace) -> Settings:
    """Environment/.env settings with CLI flags on top."""
    overrides = {
        "host": getattr(args, "host", None),
        "port_min": getattr(args, "port_min", None),
        "port_max": getattr(args, "port_max", None),
        "request_timeout": getattr(args, "timeout", None),
        "state_dir": args.state_dir,
        "debug": True if args.debug else None,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    try:
        base = get_settings()
        if not overrides:
            return base
        # Re-validate so the port range check covers CLI values as well
        return Settings.model_validate({**base.model_dump(), **overrides})
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


async def run_command(command: str, settings: Settings) -> int:
    if command == "service":
        return await Supervisor(settings).run()
    return await Bridge(settings).run()


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    command = args.command or "bridge"

    try:
        settings = resolve_settings(args)
    except ConfigurationError as e:
        setup_unified_logging(debug=args.debug)
        logger.error(str(e))
        return 1

    log_file = None if args.no_log_file else settings.resolved_log_file
    setup_unified_logging(log_file=log_file, debug=settings.debug)
    logger.info(f"DevTools MCP {command} v{__version__} starting")

    try:
        return asyncio.run(run_command(command, settings))
    except KeyboardInterrupt:
        logger.info("Shutting down...")
        return 0


if __name__ == "__main__":
    sys.exit(main())

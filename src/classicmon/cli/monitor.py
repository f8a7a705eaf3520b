#!/usr/bin/env python3
"""Command line monitor for Classic and TriStar charge controllers.

Polls the given controllers (and, optionally, any found by UDP discovery)
and logs every reading, log refresh and reachability change until
interrupted.

Settings are merged in this order, later wins: ``--config`` JSON file,
``CLASSICMON_*`` environment variables (a ``.env`` file in the working
directory is loaded first), command line flags.

Usage:
    classicmon --host 192.168.1.50
    classicmon --discover
    classicmon --help
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys

from dotenv import load_dotenv

from classicmon import __version__
from classicmon.config import ControllerConfig, MonitorConfig
from classicmon.events import LoggingEventSink
from classicmon.exceptions import ConfigError
from classicmon.supervisor import Supervisor

_LOGGER = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        prog="classicmon",
        description="Monitor Classic and TriStar solar charge controllers over Modbus/TCP.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  classicmon --host 192.168.1.50
      Poll one controller on the default Modbus port

  classicmon --host 192.168.1.50 --host 192.168.1.51:503
      Poll two controllers

  classicmon --discover
      Listen for controller beacons and poll every controller found

  classicmon --config monitor.json --cache-dir ~/.cache/classicmon -v
      Load settings from a file, persist logs, log wire traffic
""",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    conn_group = parser.add_argument_group("Connection Options")
    conn_group.add_argument(
        "--host",
        "-H",
        action="append",
        default=[],
        metavar="HOST[:PORT]",
        help="Controller address, may be repeated (default port: 502)",
    )
    conn_group.add_argument(
        "--discover",
        "-d",
        action="store_true",
        help="Listen for UDP beacons and poll discovered controllers",
    )
    conn_group.add_argument(
        "--interval",
        "-i",
        type=float,
        help="Seconds between polls (default: 1.0)",
    )
    conn_group.add_argument(
        "--timeout",
        "-t",
        type=float,
        help="Socket read timeout in seconds (default: 3.0)",
    )

    config_group = parser.add_argument_group("Configuration Options")
    config_group.add_argument(
        "--config",
        "-c",
        metavar="FILE",
        help="JSON configuration file",
    )
    config_group.add_argument(
        "--cache-dir",
        metavar="DIR",
        help="Directory to persist day and minute logs in",
    )

    output_group = parser.add_argument_group("Output Options")
    output_group.add_argument(
        "--verbose",
        "-v",
        action="count",
        default=0,
        help="Increase log output (-v debug for classicmon, -vv everything)",
    )
    return parser


def build_config(args: argparse.Namespace) -> MonitorConfig:
    """Merge file, environment and flags into one configuration.

    Raises:
        ConfigError: If any source holds an invalid value
    """
    config = MonitorConfig.from_file(args.config) if args.config else MonitorConfig()
    config = MonitorConfig.from_env(base=config)

    data = config.model_dump()
    if args.host:
        data["controllers"] = [ControllerConfig.parse_host(host).model_dump() for host in args.host]
    if args.discover:
        data["discovery_enabled"] = True
        data["auto_add_discovered"] = True
    if args.interval is not None:
        data["poll_interval"] = args.interval
    if args.timeout is not None:
        data["timeout"] = args.timeout
    if args.cache_dir:
        data["cache_dir"] = args.cache_dir
    return MonitorConfig.from_dict(data)


def configure_logging(verbosity: int) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbosity > 1 else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    if verbosity == 1:
        logging.getLogger("classicmon").setLevel(logging.DEBUG)


async def run_monitor(config: MonitorConfig) -> int:
    """Run a supervisor until SIGINT/SIGTERM."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    async with Supervisor(LoggingEventSink(), config):
        await stop.wait()
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    load_dotenv()
    configure_logging(args.verbose)

    try:
        config = build_config(args)
    except ConfigError as err:
        parser.error(str(err))

    if not config.controllers and not config.discovery_enabled:
        parser.error("no controllers given, use --host or --discover")

    try:
        return asyncio.run(run_monitor(config))
    except KeyboardInterrupt:
        _LOGGER.info("Interrupted")
        return 0


if __name__ == "__main__":
    sys.exit(main())

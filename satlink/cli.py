"""Command-line interface for satlink."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from . import constants
from .adapters import list_serial_ports
from .app import GroundStationApp, change_filter_once, run_sequence_once
from .config import SatlinkConfig, load_config
from .filters import FilterCode, FilterProtocolError
from .logging import configure_logging
from .scheduler import SequenceError, SequenceRunState, parse_sequence
from .session import LinkError

LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="satlink", description="Ground station client for the payload link"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument("--port", help="Override the configured link port")
    parser.add_argument(
        "--simulate",
        action="store_true",
        help="Talk to the built-in payload simulator instead of a serial port",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    start_parser = subparsers.add_parser("start", help="Start the ground station")
    start_parser.add_argument(
        "--auto", action="store_true", help="Cycle the filter wheel automatically"
    )

    subparsers.add_parser("ports", help="List serial ports and exit")

    validate_parser = subparsers.add_parser(
        "validate", help="Check a timed sequence such as 3g5r2b1n"
    )
    validate_parser.add_argument("sequence")

    filter_parser = subparsers.add_parser(
        "filter", help="Move the filter wheel once (letter or two digits)"
    )
    filter_parser.add_argument("code")

    sequence_parser = subparsers.add_parser(
        "sequence", help="Run one timed sequence and exit"
    )
    sequence_parser.add_argument("sequence")

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    return parser


def _apply_overrides(config: SatlinkConfig, args: argparse.Namespace) -> None:
    if args.port:
        config.link.port = args.port
        config.raw.set("link", "port", args.port)
    if args.simulate:
        config.link.transport = "simulator"
        config.raw.set("link", "transport", "simulator")


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ValueError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2
    _apply_overrides(config, args)

    if args.command == "start":
        GroundStationApp.start(config, auto_mode=args.auto)
        return 0

    if args.command == "ports":
        ports = list_serial_ports()
        if not ports:
            print("No serial ports found")
        for port in ports:
            print(f"{port.device}\t{port.description}")
        return 0

    if args.command == "validate":
        try:
            sequence = parse_sequence(
                args.sequence, max_total_seconds=config.filter.max_sequence_seconds
            )
        except SequenceError as exc:
            print(f"Invalid sequence: {exc}")
            return 1
        for index, step in enumerate(sequence.steps, start=1):
            print(f"{index}. {step}")
        print(f"Total: {sequence.total_duration}s")
        return 0

    if args.command in ("filter", "sequence"):
        configure_logging(
            config.logging.level, log_serial=config.logging.log_serial
        )
        return _run_once(config, args)

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                print(f"{key} = {value}")
            print()
        return 0

    LOGGER.error("Unknown command: %s", args.command)
    return 1


def _run_once(config: SatlinkConfig, args: argparse.Namespace) -> int:
    try:
        if args.command == "filter":
            state = asyncio.run(change_filter_once(config, FilterCode.parse(args.code)))
            suffix = "" if state.confirmed else " (unconfirmed)"
            print(f"{state.status_text} [{state.code.digits}]{suffix}")
            return 0

        result = asyncio.run(run_sequence_once(config, args.sequence))
        print(f"Sequence {result.value}")
        return 0 if result is SequenceRunState.COMPLETED else 1
    except (FilterProtocolError, SequenceError, LinkError) as exc:
        LOGGER.error("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())

"""Command-line entry point for clawdash.

Usage:
    clawdash                      # same as `clawdash start`
    clawdash start --log-file ~/.cache/clawdash.log
    clawdash once                 # one tick, plain text, no curses
    clawdash config > ~/.config/clawdash/settings.json
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from dataclasses import replace
from pathlib import Path

from clawdash.config import REFRESH_INTERVALS, default_settings_path, dump_default_settings, load_settings
from clawdash.dashboard import run_dashboard, run_once
from clawdash.errors import DisplayError
from clawdash.log import setup_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="clawdash",
        description="Terminal dashboard for an openclaw agent runtime and its host.",
    )
    parser.add_argument(
        "command",
        nargs="?",
        choices=("start", "once", "config"),
        default="start",
        help="start the dashboard (default), render one tick, or print default settings",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        metavar="PATH",
        help="Path to JSON settings file",
    )
    parser.add_argument(
        "--interval",
        type=int,
        choices=REFRESH_INTERVALS,
        default=None,
        help="Seconds between refreshes (overrides settings)",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        metavar="PATH",
        help="Write logs to this file (the dashboard never logs to the terminal)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        help="Logging level (default: INFO)",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "config":
        sys.stdout.write(dump_default_settings())
        return 0

    settings = load_settings(args.config)
    if args.interval is not None:
        settings = replace(settings, refresh_interval=args.interval)

    if args.command == "once":
        setup_logging(args.log_level, args.log_file, console=True)
        snapshot = asyncio.run(run_once(settings))
        return 0 if snapshot is not None else 1

    setup_logging(args.log_level, args.log_file)
    try:
        run_dashboard(settings, args.config or default_settings_path())
    except DisplayError as e:
        print(f"clawdash: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())

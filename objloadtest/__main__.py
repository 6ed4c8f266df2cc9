#!/usr/bin/env python3
"""Entry point for objloadtest package.

Usage::

    objloadtest init
    objloadtest run --log-level DEBUG
    objloadtest cleanup
"""

from __future__ import annotations

import argparse
import sys

from objloadtest import __version__


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="objloadtest",
        description="Object Storage Load Testing Engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  init      Validate parameters, create the container and test objects
  run       Run rampup and steady-state testing, print [results]
  cleanup   Delete objects (and the container) created by the run

Run parameters are read from OBJLOADTEST_* environment variables or a
.env file in the current directory or ~/.objloadtest/.

Examples:
  OBJLOADTEST_SIZE=1MB,10MB OBJLOADTEST_DURATION=5m objloadtest init
  OBJLOADTEST_SIZE=1MB,10MB OBJLOADTEST_DURATION=5m objloadtest run
  OBJLOADTEST_CLEANUP=1 objloadtest cleanup
""",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "command",
        nargs="?",
        choices=["init", "run", "cleanup"],
        help="Command to execute",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Also write logs to this file",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Parse CLI arguments and dispatch to the appropriate command."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    from objloadtest.cli import cmd_cleanup, cmd_init, cmd_run

    commands = {
        "init": cmd_init,
        "run": cmd_run,
        "cleanup": cmd_cleanup,
    }

    try:
        return commands[args.command](args) or 0
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())

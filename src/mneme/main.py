#!/usr/bin/env python3
"""Mneme application entry point.

This module provides a unified entry point for both interfaces:
- CLI: Command-line interface over the Local Store and sync engine
- Server: The Remote Store sync server

Usage:
    mneme cli list-chats                  # Use CLI
    mneme cli new-chat "Groceries"        # Create a chat
    mneme cli sync now                    # Push, then pull
    mneme server [--port 8385]            # Start the sync server
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, NoReturn, Optional

from mneme import __version__
from mneme.cli import add_cli_subparser
from mneme.server import add_server_subparser

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def create_parser() -> argparse.ArgumentParser:
    """Create the unified argument parser.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog="mneme",
        description="Mneme - offline-first notes in chats, synced through a Remote Store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  mneme cli new-chat "Ideas"             Create a chat
  mneme cli new-message <chat-id> "hi"   Add a message
  mneme cli search groc                  Full-text prefix search
  mneme cli sync set-server http://127.0.0.1:8385
  mneme cli sync enable
  mneme server --port 8385               Start the sync server
""",
    )
    parser.add_argument(
        "-d", "--config-dir",
        type=Path,
        default=None,
        help="Custom configuration directory (default: ~/.config/mneme/)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="interface", help="Interface to use")
    add_cli_subparser(subparsers)
    add_server_subparser(subparsers)
    return parser


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
    )


def dispatch(args: argparse.Namespace, parser: argparse.ArgumentParser) -> int:
    """Run the selected interface and return its exit code."""
    if args.interface == "cli":
        from mneme.cli import run as run_cli
        return run_cli(args.config_dir, args)
    if args.interface == "server":
        from mneme.server import run as run_server
        return run_server(args.config_dir, args)
    parser.print_help()
    return 1


def main(argv: Optional[List[str]] = None) -> NoReturn:
    """Main entry point for Mneme.

    Parses arguments, configures logging and dispatches to the selected
    interface.
    """
    parser = create_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)
    sys.exit(dispatch(args, parser))


if __name__ == "__main__":
    main()

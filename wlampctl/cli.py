"""Command line entry point."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from wlampctl.apache import add_apache_parser, get_apache_version, handle_apache
from wlampctl.helpers import WlampctlError, detect_xampp_root, exec_and_first_line

VERSION = "0.1.0"


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for all commands."""
    parser = argparse.ArgumentParser(
        prog="wlampctl", description="CLI for controlling the XAMPP apache server"
    )
    parser.add_argument("--version", action="version", version=f"wlampctl {VERSION}")
    commands = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")
    add_apache_parser(commands)
    commands.add_parser("root", help="Print detected XAMPP root directory")
    commands.add_parser("version", help="Show LampCTL, Apache, and PHP versions")
    return parser


def show_versions(root: os.PathLike | str) -> None:
    """Print the versions of this tool, Apache and PHP."""
    root = Path(root)
    print(f"wlampctl {VERSION}")
    print(f"xampp root: {root}")
    apache = get_apache_version(root)
    if apache is not None:
        print(f"apache: {apache}")
    php = exec_and_first_line(root / "php" / "php.exe", ["-v"])
    if php is not None:
        print(f"php: {php}")


def main(argv=None) -> int:
    """Run the command line; return the exit code."""
    args = build_parser().parse_args(argv)
    try:
        root = detect_xampp_root()
        if args.command == "apache":
            return handle_apache(args, root)
        if args.command == "root":
            print(root)
        elif args.command == "version":
            show_versions(root)
    except (WlampctlError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
    return 0
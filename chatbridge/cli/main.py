"""Main entry point for the bridgectl CLI tool."""

import argparse
import sys

from .client import BridgeClient
from . import commands


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bridgectl",
        description="Inspect and drive a running tmux chat bridge",
    )
    parser.add_argument("--api-url", help="Bridge API URL (default: $CHATBRIDGE_API_URL or http://127.0.0.1:8430)")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")
    subparsers.add_parser("status", help="Show monitoring status")
    subparsers.add_parser("sessions", help="List tmux sessions")
    subparsers.add_parser("dedupstats", help="Show dedup cache statistics")

    send_parser = subparsers.add_parser("send", help="Send text to the active session")
    send_parser.add_argument("text", nargs="+", help="Text to send (yes/no and !commands work as in chat)")

    return parser


def main(argv=None):
    """Main entry point for bridgectl."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    client = BridgeClient(api_url=args.api_url)

    if args.command == "status":
        sys.exit(commands.cmd_status(client))
    elif args.command == "sessions":
        sys.exit(commands.cmd_sessions(client))
    elif args.command == "dedupstats":
        sys.exit(commands.cmd_dedupstats(client))
    elif args.command == "send":
        sys.exit(commands.cmd_send(client, " ".join(args.text)))


if __name__ == "__main__":
    main()

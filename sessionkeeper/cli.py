"""Command-line interface for SessionKeeper."""

from __future__ import annotations

import argparse
import sys

from pathlib import Path
from typing import TYPE_CHECKING

from .exceptions import SessionKeeperException, SessionUnavailableError
from .log import configure_from_settings, enable_debug
from .service import AuthenticationService


if TYPE_CHECKING:
    from collections.abc import Sequence

    from .config import SessionKeeperSettings


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="sessionkeeper",
        description="OIDC login and session management for desktop tools",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log refresh scheduling and listener traffic",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    login_parser = subparsers.add_parser("login", help="Log in through the browser")
    login_parser.add_argument("scopes", nargs="*", metavar="SCOPE", help="Scopes to request")

    sessions_parser = subparsers.add_parser("sessions", help="List sessions")
    sessions_parser.add_argument(
        "--scope",
        nargs="+",
        metavar="SCOPE",
        help="Only sessions with exactly these scopes (tokens are resolved)",
    )

    token_parser = subparsers.add_parser("token", help="Print a usable access token")
    token_parser.add_argument("session_id", metavar="SESSION_ID")

    logout_parser = subparsers.add_parser("logout", help="Log out of sessions")
    logout_group = logout_parser.add_mutually_exclusive_group(required=True)
    logout_group.add_argument("session_id", nargs="?", metavar="SESSION_ID")
    logout_group.add_argument("--all", action="store_true", help="Log out of every session")

    config_parser = subparsers.add_parser("config", help="Show or export configuration")
    config_group = config_parser.add_mutually_exclusive_group()
    config_group.add_argument(
        "--show",
        action="store_true",
        help="Show current configuration",
    )
    config_group.add_argument(
        "--toml",
        action="store_true",
        help="Export configuration as TOML",
    )
    config_parser.add_argument(
        "--output",
        "-o",
        type=str,
        help="Write output to file instead of stdout",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Run the main CLI entry point.

    Returns
    -------
    int
        Exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    from .config import get_settings

    settings = get_settings()
    configure_from_settings(settings.log)
    if args.debug:
        enable_debug()

    if args.command == "config":
        return handle_config(args, settings)
    if args.command in {"login", "sessions", "token", "logout"}:
        try:
            return handle_session_command(args, settings)
        except SessionKeeperException as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1
    parser.print_help()
    return 0


def handle_config(args: argparse.Namespace, settings: SessionKeeperSettings) -> int:
    """Handle the config command.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.
    settings : SessionKeeperSettings
        The loaded settings.

    Returns
    -------
    int
        Exit code.
    """
    output = settings.to_toml() if args.toml else settings.show()

    if args.output:
        Path(args.output).write_text(output, encoding="utf-8")
        print(f"Configuration written to {args.output}")
    else:
        print(output)

    return 0


def handle_session_command(args: argparse.Namespace, settings: SessionKeeperSettings) -> int:
    """Handle login, sessions, token and logout against one service."""
    with AuthenticationService.build(settings) as service:
        if args.command == "login":
            session = service.create_session(args.scopes)
            print(f"Signed in as {session.account.label} (session {session.id})")
            return 0

        if args.command == "sessions":
            sessions = service.get_sessions(args.scope) if args.scope else service.sessions
            if not sessions:
                print("No sessions")
            for session in sessions:
                state = "available" if session.access_token else "unavailable"
                print(f"{session.id:36} {session.account.label:30} {' '.join(session.scopes):30} {state}")
            return 0

        if args.command == "token":
            try:
                resolved = service.resolve_access(args.session_id)
            except SessionUnavailableError as exc:
                print(f"Error: {exc}", file=sys.stderr)
                return 2
            print(resolved.access_token)
            return 0

        if args.all:
            removed = service.clear_sessions()
            print(f"Logged out of {len(removed)} sessions")
            return 0
        if service.remove_session(args.session_id) is None:
            print(f"No session {args.session_id}", file=sys.stderr)
            return 1
        print(f"Logged out of session {args.session_id}")
        return 0

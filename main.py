#!/usr/bin/env python3
"""
CRM identity service -- maintenance commands.

The API's lifespan loop already runs both jobs periodically. These commands
exist for deployments that disable the loop and drive maintenance from cron
or another scheduler, and for one-off runs against a database.

Usage:
  python main.py sweep-sessions
  python main.py sweep-sessions --timeout 60
  python main.py prune-revocations

Environment variables:
  DATABASE_URL                   SQLAlchemy URL (default sqlite:///./crm_identity.db)
  SESSION_IDLE_TIMEOUT_MINUTES   Idle threshold for sweep-sessions (default 30)
  DEBUG                          Set to true to auto-generate signing secrets locally
"""

import argparse
import logging
import sys

from api.main import build_services
from auth.errors import AuthError
from core.config import get_settings

logger = logging.getLogger("crmidentity.cli")


def _sweep_sessions(args: argparse.Namespace) -> int:
    settings = get_settings()
    timeout = args.timeout if args.timeout is not None else settings.session_idle_timeout_minutes
    if timeout <= 0:
        print("  [!] --timeout must be a positive number of minutes.")
        return 2
    services = build_services(settings)
    try:
        count = services.sessions.sweep_idle(timeout)
    finally:
        services.close()
    print(f"  Deactivated {count} session(s) idle for more than {timeout} minute(s).")
    return 0


def _prune_revocations(args: argparse.Namespace) -> int:
    services = build_services(get_settings())
    try:
        count = services.tokens.prune_revocations()
    finally:
        services.close()
    print(f"  Removed {count} expired revocation entr{'y' if count == 1 else 'ies'}.")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="crm-identity",
        description="Maintenance jobs for the CRM identity service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py sweep-sessions
  python main.py sweep-sessions --timeout 60
  DATABASE_URL=postgresql://... python main.py prune-revocations
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sweep = sub.add_parser("sweep-sessions", help="Deactivate sessions idle past the timeout")
    sweep.add_argument(
        "--timeout",
        type=int,
        metavar="MINUTES",
        help="Idle threshold in minutes (default: SESSION_IDLE_TIMEOUT_MINUTES)",
    )
    sweep.set_defaults(func=_sweep_sessions)

    prune = sub.add_parser("prune-revocations", help="Delete revocation entries whose tokens have expired")
    prune.set_defaults(func=_prune_revocations)

    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except AuthError as exc:
        logger.error("%s failed: %s", args.command, exc.message)
        return 1
    except ValueError as exc:
        # Settings validation (missing or weak secrets outside DEBUG).
        print(f"  [!] Configuration error: {exc}")
        return 2


if __name__ == "__main__":
    sys.exit(main())

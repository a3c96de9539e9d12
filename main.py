#!/usr/bin/env python3
"""
StrmAuth -- operator command line for the authentication database.

Uses the same Settings (environment / .env) and gateway wiring as the API, so
it must point at the same DATABASE_URL and SECRET_KEY as the running server.

Usage:
  python main.py user-info --username alice
  python main.py deactivate --username alice
  python main.py revoke-sessions --username alice
  python main.py purge
"""

import argparse
from typing import Optional

from auth.db import create_db_engine
from auth.errors import AuthError
from auth.gateway import AuthGateway, build_gateway
from auth.models import User
from core.config import get_settings


def _find_user(gateway: AuthGateway, username: str) -> Optional[User]:
    user = gateway.users.get_by_username(username)
    if user is None:
        print(f"  [!] No user named '{username}'.")
    return user


def _status(user: User) -> str:
    if user.is_active:
        return "active"
    return "pending activation" if user.is_pending else "deactivated"


def cmd_user_info(gateway: AuthGateway, args: argparse.Namespace) -> int:
    user = _find_user(gateway, args.username)
    if user is None:
        return 1
    print(f"  id          {user.id}")
    print(f"  username    {user.username}")
    print(f"  email       {user.email}")
    print(f"  status      {_status(user)}")
    print(f"  created     {user.created_at}")
    print(f"  last login  {user.last_login or 'never'}")
    if user.deactivated_at:
        print(f"  deactivated {user.deactivated_at}")
    return 0


def cmd_deactivate(gateway: AuthGateway, args: argparse.Namespace) -> int:
    user = _find_user(gateway, args.username)
    if user is None:
        return 1
    gateway.deactivate_user(user.id)
    print(f"  Deactivated '{user.username}' and revoked all of its sessions.")
    return 0


def cmd_revoke_sessions(gateway: AuthGateway, args: argparse.Namespace) -> int:
    user = _find_user(gateway, args.username)
    if user is None:
        return 1
    gateway.revoke_sessions(user.id)
    print(f"  Revoked every session issued to '{user.username}' so far.")
    return 0


def cmd_purge(gateway: AuthGateway, args: argparse.Namespace) -> int:
    removed = gateway.purge_expired()
    print(f"  Purged {removed} expired record(s). {gateway.blacklist.count()} blacklisted token(s) remain.")
    return 0


_COMMANDS = {
    "user-info": cmd_user_info,
    "deactivate": cmd_deactivate,
    "revoke-sessions": cmd_revoke_sessions,
    "purge": cmd_purge,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="strmauth",
        description="Operator tools for StrmAuth accounts and sessions.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py user-info --username alice
  python main.py revoke-sessions --username alice
  DATABASE_URL=sqlite:///prod.db python main.py purge
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)
    for name, help_text in (
        ("user-info", "Show an account's status"),
        ("deactivate", "Deactivate an account and revoke its sessions"),
        ("revoke-sessions", "Revoke every session of an account, keep the account"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("--username", required=True, help="Exact, case-sensitive username")
    sub.add_parser("purge", help="Delete expired codes and revocation records now")
    return parser


def main(argv: Optional[list[str]] = None, gateway: Optional[AuthGateway] = None) -> int:
    args = build_parser().parse_args(argv)
    if gateway is None:
        settings = get_settings()
        gateway = build_gateway(settings, create_db_engine(settings.database_url))
    try:
        return _COMMANDS[args.command](gateway, args)
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

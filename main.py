#!/usr/bin/env python3
"""
BlogAPI auth maintenance CLI.

Operational chores that should not need the HTTP server running. Reads the
same settings (DATABASE_URL, SECRET_KEY, ...) as the API.

Usage:
  python main.py cleanup-tokens
  python main.py list-trashed-users
  python main.py list-trashed-users --json
  python main.py restore-user 3f1c2a9e-...
  python main.py revoke-all 3f1c2a9e-...
"""

import argparse
import json
import sys
from datetime import timedelta
from typing import Optional

from auth.credentials import CredentialStore
from auth.errors import AuthError
from auth.ledger import LedgerConfig, RefreshTokenLedger
from auth.management import PrincipalManager
from auth.rbac import RbacEvaluator
from auth.store import AuthStore
from core.config import get_settings


def _ledger(store: AuthStore) -> RefreshTokenLedger:
    settings = get_settings()
    return RefreshTokenLedger(store, LedgerConfig(ttl=timedelta(days=settings.refresh_token_expire_days)))


def _principals(store: AuthStore) -> PrincipalManager:
    settings = get_settings()
    return PrincipalManager(
        store,
        CredentialStore(rounds=settings.bcrypt_rounds),
        _ledger(store),
        RbacEvaluator(store, settings.admin_role_names),
    )


def cmd_cleanup_tokens(store: AuthStore, args: argparse.Namespace) -> int:
    removed = _ledger(store).cleanup_expired()
    print(f"Removed {removed} expired refresh token(s).")
    return 0


def cmd_list_trashed_users(store: AuthStore, args: argparse.Namespace) -> int:
    users = store.users.get_trashed()
    if args.json:
        rows = [
            {"id": u.id, "username": u.username, "email": u.email, "deletedAt": u.lifecycle.deleted_at}
            for u in users
        ]
        print(json.dumps(rows, indent=2))
        return 0
    if not users:
        print("No deleted users.")
        return 0
    for u in users:
        print(f"  {u.id}  {u.username:<20} {u.email:<32} deleted {u.lifecycle.deleted_at}")
    return 0


def cmd_restore_user(store: AuthStore, args: argparse.Namespace) -> int:
    try:
        user = _principals(store).restore(args.user_id)
    except AuthError as exc:
        print(f"  [!] {exc.message}", file=sys.stderr)
        return 1
    print(f"Restored {user.username} ({user.id}).")
    return 0


def cmd_revoke_all(store: AuthStore, args: argparse.Namespace) -> int:
    count = _ledger(store).revoke_all(args.user_id)
    print(f"Revoked {count} refresh token(s) for {args.user_id}.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="blogapi-auth",
        description="Maintenance commands for the BlogAPI auth database.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py cleanup-tokens
  python main.py list-trashed-users --json
  python main.py restore-user 3f1c2a9e-0d7b-4c1e-9a53-8f0c1b2d3e4f
  DATABASE_URL=postgresql://user:pw@db/blog python main.py cleanup-tokens
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    cleanup = sub.add_parser("cleanup-tokens", help="Hard-delete expired refresh tokens")
    cleanup.set_defaults(handler=cmd_cleanup_tokens)

    trashed = sub.add_parser("list-trashed-users", help="List soft-deleted users")
    trashed.add_argument("--json", action="store_true", help="Output structured JSON")
    trashed.set_defaults(handler=cmd_list_trashed_users)

    restore = sub.add_parser("restore-user", help="Restore a soft-deleted user")
    restore.add_argument("user_id", metavar="USER-ID")
    restore.set_defaults(handler=cmd_restore_user)

    revoke = sub.add_parser("revoke-all", help="Revoke every refresh token of a user")
    revoke.add_argument("user_id", metavar="USER-ID")
    revoke.set_defaults(handler=cmd_revoke_all)
    return parser


def main(argv: Optional[list[str]] = None, store: Optional[AuthStore] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "handler", None):
        parser.print_help()
        return 0

    own_store = store is None
    if store is None:
        store = AuthStore(get_settings().database_url)
    try:
        return args.handler(store, args)
    finally:
        if own_store:
            store.close()


if __name__ == "__main__":
    sys.exit(main())

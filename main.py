#!/usr/bin/env python3
"""
civicauth -- administration commands for the authentication service.

Usage:
  python main.py create-admin --username alice --email alice@city.gov
  python main.py audit alice
  python main.py audit alice@city.gov --page 2 --json
  python main.py purge-tokens

Environment variables:
  DATABASE_URL        SQLAlchemy URL of the service database (default sqlite:///civicauth.db)
  ADMIN_PASSWORD      Password for create-admin; prompted for when unset
  JWT_ACCESS_SECRET, JWT_REFRESH_SECRET, SESSION_SECRET
                      Required unless DEBUG=true (see core/config.py)
"""

import argparse
import getpass
import json
import os
import sys
from typing import Optional

from audit.models import AuditAction, AuditEvent, LoginMethod, RequestContext
from audit.recorder import AuditRecorder
from audit.store import AuditStore
from auth.accounts import AccountService
from auth.models import Role
from auth.password_reset import PasswordResetStore
from auth.store import AccountStore
from auth.token_store import RefreshTokenStore
from auth.tokens import TokenIssuer
from core.config import get_settings
from core.errors import AppError
from core.notifier import build_notifier

_CLI_CONTEXT = RequestContext(ip="cli", device="civicauth-cli")


def _create_admin(args: argparse.Namespace, accounts: AccountStore, recorder: AuditRecorder) -> int:
    settings = get_settings()
    password: Optional[str] = os.environ.get("ADMIN_PASSWORD")
    if not password:
        password = getpass.getpass("Password: ")
        if password != getpass.getpass("Repeat password: "):
            print("  [!] Passwords do not match.", file=sys.stderr)
            return 1

    tokens = TokenIssuer(settings, accounts, RefreshTokenStore(settings.database_url))
    service = AccountService(accounts, tokens, build_notifier(settings))
    try:
        account = service.register(
            args.username,
            args.email,
            password,
            full_name=args.full_name,
            role=Role.ADMINISTRATOR,
        )
    except AppError as exc:
        field = f" ({exc.field})" if exc.field else ""
        print(f"  [!] {exc.message}{field}", file=sys.stderr)
        return 1
    finally:
        tokens.token_store.close()

    # Synchronous write: the bootstrap must leave a trace or fail loudly.
    recorder.log_event(
        AuditEvent(
            action=AuditAction.USER_REGISTRATION,
            context=_CLI_CONTEXT,
            actor_id=account.id,
            method=LoginMethod.USERNAME,
            email=account.email,
            metadata={"role": account.role.value, "source": "cli"},
        )
    )
    print(f"Created administrator {account.username} (id {account.id}).")
    return 0


def _audit(args: argparse.Namespace, accounts: AccountStore, recorder: AuditRecorder) -> int:
    account = accounts.get_by_identifier(args.identifier)
    if account is None:
        print(f"  [!] No account matches '{args.identifier}'.", file=sys.stderr)
        return 1
    records = recorder.store.for_actor(account.id, page=args.page, limit=args.limit)
    if args.json:
        print(
            json.dumps(
                [
                    {
                        "id": r.id,
                        "timestamp": r.timestamp.isoformat(),
                        "action": r.action.value,
                        "status": r.status.value,
                        "method": r.method.value if r.method else None,
                        "initiatorId": r.initiator_id,
                        "ip": r.ip,
                        "metadata": r.metadata,
                    }
                    for r in records
                ],
                indent=2,
            )
        )
        return 0

    print(f"\nAudit trail for {account.username} <{account.email}> (page {args.page})")
    print("-" * 60)
    if not records:
        print("  No records.")
    for r in records:
        by = f" by #{r.initiator_id}" if r.initiator_id is not None else ""
        method = f" [{r.method.value}]" if r.method else ""
        print(f"  {r.timestamp:%Y-%m-%d %H:%M:%S}  {r.action.value:<20} {r.status.value:<8}{method}{by}  {r.ip}")
    return 0


def _purge_tokens(args: argparse.Namespace) -> int:
    url = get_settings().database_url
    refresh = RefreshTokenStore(url)
    resets = PasswordResetStore(url)
    try:
        removed = refresh.purge_expired()
        removed_resets = resets.purge_expired()
    finally:
        refresh.close()
        resets.close()
    print(f"Removed {removed} expired or revoked refresh token(s).")
    print(f"Removed {removed_resets} expired or used password reset token(s).")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="civicauth",
        description="Administration commands for the civicauth authentication service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  ADMIN_PASSWORD='S3cure!pass' python main.py create-admin --username alice --email alice@city.gov
  python main.py audit alice --limit 20
  python main.py purge-tokens
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-admin", help="Create an administrator account")
    create.add_argument("--username", required=True)
    create.add_argument("--email", required=True)
    create.add_argument("--full-name", default=None)

    audit = sub.add_parser("audit", help="Print an account's audit trail, newest first")
    audit.add_argument("identifier", help="Username or email of the account")
    audit.add_argument("--page", type=int, default=1)
    audit.add_argument("--limit", type=int, default=50)
    audit.add_argument("--json", action="store_true", help="Output structured JSON")

    sub.add_parser("purge-tokens", help="Delete expired or spent refresh and password reset tokens")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "purge-tokens":
        return _purge_tokens(args)

    settings = get_settings()
    accounts = AccountStore(settings.database_url)
    recorder = AuditRecorder(AuditStore(settings.database_url))
    try:
        if args.command == "create-admin":
            return _create_admin(args, accounts, recorder)
        return _audit(args, accounts, recorder)
    finally:
        recorder.store.close()
        accounts.close()


if __name__ == "__main__":
    sys.exit(main())

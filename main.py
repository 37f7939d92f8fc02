#!/usr/bin/env python3
"""
LedgerGuard -- operator CLI for the authentication and access-control core.

Usage:
  python main.py init-secret
  python main.py init-secret --force
  python main.py rotate-secret
  python main.py sweep
  python main.py error-stats --hours 72
  python main.py show-error err_20260118_3f9a0c1b2d4e
  python main.py create-admin admin@example.com

Every command works against DATABASE_URL (or --database-url), the same
database the API workers use. A rotation here bumps the secret version,
and each worker reloads the secret at its next token issue or check.

Environment variables:
  DATABASE_URL   SQLAlchemy URL of the shared database (default: sqlite ledgerguard.db)
"""

from __future__ import annotations

import argparse
import getpass
import json
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from api.services import Services, build_services
from auth.models import User
from auth.tokens import hash_password
from core.validation import EmailRule, PasswordRule, validate

ADMIN_SCHEMA = {
    "email": EmailRule(),
    "password": PasswordRule(),
}


def _init_secret(services: Services, args: argparse.Namespace) -> int:
    provider = services.secret_provider
    version = provider.version()
    if version is not None and not args.force:
        print(f"  Signing secret already initialized (version {version}). Use --force to replace it.")
        return 0
    if version is not None:
        version = provider.rotate()
        print(f"  Signing secret replaced (version {version}). All previously issued tokens are now invalid.")
        return 0
    provider.get_secret()
    if provider.degraded:
        print("  [!] Database unreachable -- signing secret NOT initialized.")
        return 1
    print(f"  Signing secret initialized (version {provider.version()}).")
    return 0


def _rotate_secret(services: Services, args: argparse.Namespace) -> int:
    version = services.secret_provider.rotate()
    print(f"  Signing secret rotated (version {version}). All previously issued tokens are now invalid.")
    print("  Running API workers switch to the new secret on their next token check.")
    return 0


def _sweep(services: Services, args: argparse.Namespace) -> int:
    removed = services.sweep()
    for name, count in removed.items():
        print(f"  {name:<14} {count} removed")
    return 0


def _error_stats(services: Services, args: argparse.Namespace) -> int:
    stats = services.error_log.stats(hours=args.hours)
    print(f"  Errors in the last {stats['hours']}h: {stats['total']}")
    for code, count in sorted(stats["by_classification"].items(), key=lambda item: -item[1]):
        print(f"    {code:<22} {count}")
    return 0


def _show_error(services: Services, args: argparse.Namespace) -> int:
    record = services.error_log.get(args.error_id)
    if record is None:
        print(f"  [!] No error record {args.error_id}.")
        return 1
    print(f"  {record.error_id}  {record.timestamp}  {record.classification} ({record.status})")
    print(f"  client message: {record.redacted_message}")
    print(f"  context: {json.dumps(record.context, sort_keys=True)}")
    print("  detail:")
    for line in record.raw_detail.splitlines():
        print(f"    {line}")
    return 0


def _create_admin(services: Services, args: argparse.Namespace) -> int:
    password: Optional[str]
    if args.password_stdin:
        password = sys.stdin.readline().rstrip("\n")
    else:
        password = getpass.getpass("  Password: ")
        if getpass.getpass("  Repeat password: ") != password:
            print("  [!] Passwords do not match.")
            return 1

    result = validate({"email": args.email, "password": password}, ADMIN_SCHEMA)
    if not result.ok:
        for field, message in result.errors.items():
            print(f"  [!] {field}: {message}")
        return 1
    try:
        user_id = services.user_store.create_user(
            User(email=result.values["email"], role="admin", hashed_password=hash_password(password))
        )
    except IntegrityError:
        print(f"  [!] A user with email {args.email} already exists.")
        return 1
    print(f"  Admin user created (id {user_id}).")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ledgerguard",
        description="Operator commands for the LedgerGuard authentication core.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py init-secret
  python main.py rotate-secret
  python main.py sweep
  python main.py error-stats --hours 24
  echo 'S3cure!pass' | python main.py create-admin admin@example.com --password-stdin
  DATABASE_URL=postgresql://ledger@db/ledger python main.py sweep
        """,
    )
    parser.add_argument(
        "--database-url",
        metavar="URL",
        default=None,
        help="SQLAlchemy database URL (default: DATABASE_URL from the environment)",
    )
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")

    init = commands.add_parser("init-secret", help="Create the signing secret if it does not exist yet")
    init.add_argument("--force", action="store_true", help="Replace an existing secret (invalidates all tokens)")
    init.set_defaults(handler=_init_secret)

    rotate = commands.add_parser("rotate-secret", help="Replace the signing secret (invalidates all tokens)")
    rotate.set_defaults(handler=_rotate_secret)

    sweep = commands.add_parser("sweep", help="Purge expired rate windows, CSRF tokens and old error records")
    sweep.set_defaults(handler=_sweep)

    stats = commands.add_parser("error-stats", help="Summarize logged errors by classification")
    stats.add_argument("--hours", type=int, default=24, metavar="N", help="Look-back window in hours (default: 24)")
    stats.set_defaults(handler=_error_stats)

    show = commands.add_parser("show-error", help="Print one error record, including the unredacted detail")
    show.add_argument("error_id", metavar="ERROR_ID")
    show.set_defaults(handler=_show_error)

    admin = commands.add_parser("create-admin", help="Create an admin account")
    admin.add_argument("email", metavar="EMAIL")
    admin.add_argument("--password-stdin", action="store_true", help="Read the password from the first line of stdin")
    admin.set_defaults(handler=_create_admin)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "handler", None):
        parser.print_help()
        return 0
    services = build_services(args.database_url)
    try:
        return args.handler(services, args)
    finally:
        services.close()


if __name__ == "__main__":
    sys.exit(main())

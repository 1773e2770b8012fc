"""Database utilities for the Secure Bank users table.

Usage:
    python manage.py init-db
    python manage.py list-users
    python manage.py inspect
    python manage.py find --last4 6789
    python manage.py check 123456789
    python manage.py migrate-ssns [--yes]
    python manage.py migrate-lookup [--purge-legacy] [--yes]
    python manage.py drop-ssn-column [--yes]
    python manage.py backup-db

No command prints an SSN.  ``check`` is the only command that accepts one,
for one-off manual verification by an operator.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import shutil
import sys
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from config import get_settings
from db.connection import (
    build_engine,
    drop_legacy_ssn_column,
    ensure_lookup_columns,
    get_user_columns,
    has_legacy_ssn_column,
    init_models,
    session_factory,
)
from logging_config import setup_logging
from models.database import User
from sensitive.errors import ConfigurationError
from sensitive.keys import default_lookup_keys
from sensitive.lookup import mask_ssn, normalize_ssn, ssn_last4
from services.ssn_migration import (
    MigrationReport,
    encrypt_plaintext_ssns,
    legacy_only_user_ids,
    migrate_to_lookup,
)
from services.ssn_service import find_users_by_ssn

# Columns safe to print.  users.ssn is never selected for display.
_DISPLAY_COLUMNS = (
    User.id,
    User.email,
    User.first_name,
    User.last_name,
    User.ssn_hash,
    User.ssn_last4,
    User.ssn_scheme,
)


def _row_dict(row) -> dict:
    data = dict(row._mapping)
    if data.get("ssn_scheme") is not None:
        data["ssn_scheme"] = getattr(data["ssn_scheme"], "value", data["ssn_scheme"])
    return data


def _user_dict(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "ssn_hash": user.ssn_hash,
        "ssn_last4": user.ssn_last4,
        "ssn_scheme": user.ssn_scheme.value if user.ssn_scheme else None,
    }


def _sqlite_path(bind: AsyncEngine) -> Path:
    url = make_url(str(bind.url))
    if not url.drivername.startswith("sqlite") or not url.database:
        raise ValueError("File backups are only supported for SQLite databases")
    return Path(url.database)


def backup_sqlite(bind: AsyncEngine) -> Path:
    """Copy the SQLite file next to itself with a timestamp suffix."""
    source = _sqlite_path(bind)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")
    backup = source.with_name(f"{source.name}.bak.{stamp}")
    shutil.copyfile(source, backup)
    return backup


def _confirm(args: argparse.Namespace, prompt: str) -> bool:
    if args.yes:
        return True
    answer = input(f"{prompt} Press Enter to continue or type 'no' to cancel: ")
    return answer.strip().lower() not in {"n", "no"}


def _print_report(report: MigrationReport) -> int:
    print(f"Done: {report.summary()}")
    for user_id, reason in sorted(report.skipped.items()):
        print(f"  skipped user id={user_id}: {reason}")
    return 0 if report.ok else 1


# ─── Commands ─────────────────────────────────────────────────────────────────


async def cmd_init_db(args, bind, sessions) -> int:
    await init_models(bind)
    print("Database initialized.")
    return 0


async def cmd_list_users(args, bind, sessions) -> int:
    async with sessions() as db:
        rows = (await db.execute(select(*_DISPLAY_COLUMNS).order_by(User.id))).all()
    print("\n=== Current Users ===")
    if not rows:
        print("No users found")
        return 0
    for row in rows:
        scheme = row.ssn_scheme.value if row.ssn_scheme else "unmarked"
        print(
            f"ID: {row.id}, Email: {row.email}, Name: {row.first_name} {row.last_name}, "
            f"SSN: {mask_ssn(row.ssn_last4)}, Scheme: {scheme}"
        )
    return 0


async def cmd_inspect(args, bind, sessions) -> int:
    print("COLUMNS:")
    for position, col in enumerate(await get_user_columns(bind)):
        print(f"  {position}: {col['name']} ({col['type']})")

    print("\nSAMPLE ROWS:")
    async with sessions() as db:
        rows = (
            await db.execute(
                select(User.id, User.email, User.ssn_hash, User.ssn_last4).order_by(User.id).limit(5)
            )
        ).all()
    if not rows:
        print("  (no rows)")
    for row in rows:
        print(json.dumps(_row_dict(row)))
    return 0


async def cmd_find(args, bind, sessions) -> int:
    last4 = ssn_last4(args.last4)
    async with sessions() as db:
        rows = (
            await db.execute(
                select(User.id, User.email, User.ssn_hash, User.ssn_last4)
                .where(User.ssn_last4 == last4)
                .order_by(User.id)
            )
        ).all()
    if not rows:
        print(f"No users found with last4={last4}")
        return 0
    for row in rows:
        print(json.dumps(_row_dict(row)))
    return 0


async def cmd_check(args, bind, sessions) -> int:
    try:
        digits = normalize_ssn(args.ssn)
    except ValueError:
        print("Please provide a 9-digit SSN to check, e.g. manage.py check 123456789", file=sys.stderr)
        return 1
    async with sessions() as db:
        users = await find_users_by_ssn(db, digits)
    if not users:
        print("No match for provided SSN (hash not found)")
        return 0
    for user in users:
        print("Match found:", json.dumps(_user_dict(user)))
    return 0


async def cmd_migrate_ssns(args, bind, sessions) -> int:
    if not _confirm(args, "This will encrypt plaintext SSNs in place."):
        print("Migration cancelled.")
        return 0
    await ensure_lookup_columns(bind)
    if not await has_legacy_ssn_column(bind):
        print("`ssn` column not found on users table; nothing to migrate.")
        return 0
    print("\n=== Migrating SSNs ===")
    async with sessions() as db:
        report = await encrypt_plaintext_ssns(db)
    return _print_report(report)


async def cmd_migrate_lookup(args, bind, sessions) -> int:
    prompt = "This will compute SSN lookup digests"
    prompt += " and clear the legacy ssn values." if args.purge_legacy else "."
    if not _confirm(args, prompt):
        print("Migration cancelled.")
        return 0
    # Fails on a missing SSN_HMAC_KEY before the schema is touched.
    default_lookup_keys()
    added = await ensure_lookup_columns(bind)
    for name in added:
        print(f"Added column {name} to users table")
    if not await has_legacy_ssn_column(bind):
        print("`ssn` column not found on users table; nothing to migrate.")
        return 0
    print("\n=== Migrating SSNs to lookup digests ===")
    async with sessions() as db:
        report = await migrate_to_lookup(db, purge_legacy=args.purge_legacy)
    return _print_report(report)


async def cmd_drop_ssn_column(args, bind, sessions) -> int:
    if not _confirm(args, "This will permanently remove users.ssn."):
        print("Cancelled.")
        return 0
    if not await has_legacy_ssn_column(bind):
        print("`ssn` column not found on users table; nothing to do.")
        return 0
    async with sessions() as db:
        pending = await legacy_only_user_ids(db)
    if pending:
        ids = ", ".join(str(user_id) for user_id in pending)
        print(
            f"Refusing to drop users.ssn: {len(pending)} user(s) have no lookup digest yet "
            f"(ids: {ids}). Run `manage.py migrate-lookup` first.",
            file=sys.stderr,
        )
        return 1
    backup = backup_sqlite(bind)
    print(f"Created backup of database at {backup}")
    await drop_legacy_ssn_column(bind)
    print(f"Successfully removed `ssn` column. Backup stored at {backup}")
    return 0


async def cmd_backup_db(args, bind, sessions) -> int:
    backup = backup_sqlite(bind)
    print(f"Database backup created at {backup}")
    return 0


COMMANDS = {
    "init-db": cmd_init_db,
    "list-users": cmd_list_users,
    "inspect": cmd_inspect,
    "find": cmd_find,
    "check": cmd_check,
    "migrate-ssns": cmd_migrate_ssns,
    "migrate-lookup": cmd_migrate_lookup,
    "drop-ssn-column": cmd_drop_ssn_column,
    "backup-db": cmd_backup_db,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="manage.py", description="Secure Bank database utilities")
    parser.add_argument("--database-url", help="override DATABASE_URL")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="create any missing tables")
    sub.add_parser("list-users", help="list all users (masked SSNs)")
    sub.add_parser("inspect", help="show users columns and sample rows")

    find = sub.add_parser("find", help="find users by SSN last four digits")
    find.add_argument("--last4", required=True)

    check = sub.add_parser("check", help="look up one SSN by digest (operator use only)")
    check.add_argument("ssn")

    for name, help_text in (
        ("migrate-ssns", "encrypt leftover plaintext SSNs"),
        ("migrate-lookup", "move SSNs to lookup digests"),
        ("drop-ssn-column", "back up the database and drop users.ssn"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("--yes", action="store_true", help="do not prompt for confirmation")
        if name == "migrate-lookup":
            cmd.add_argument("--purge-legacy", action="store_true", help="clear users.ssn after hashing")

    sub.add_parser("backup-db", help="copy the SQLite database file")
    return parser


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    bind = build_engine(args.database_url or settings.database_url)
    sessions = session_factory(bind)
    try:
        return await COMMANDS[args.command](args, bind, sessions)
    finally:
        await bind.dispose()


def main(argv: list[str] | None = None, *, configure_logging: bool = True) -> int:
    args = build_parser().parse_args(argv)
    if configure_logging:
        setup_logging()
    try:
        return asyncio.run(run(args))
    except (ConfigurationError, ValueError, OSError, SQLAlchemyError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())

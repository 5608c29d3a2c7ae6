#!/usr/bin/env python3
"""CLI management tool for the users table.

Provides commands to:
- Create or repair the users table
- Report columns missing from an existing table
- Add users with bcrypt-hashed passwords
- List all users
- Change a user's password
"""

import argparse
import getpass
import logging
import sys
from pathlib import Path

import jsonschema

# Ensure roost package is importable
sys.path.insert(0, str(Path(__file__).parent.parent))

from roost.config import RoostConfig, load_config
from roost.credentials import CredentialManager
from roost.errors import RoostError
from roost.schema import SchemaReconciler
from roost.session import MemorySessionStore
from roost.storage import SQLiteStorage

logger = logging.getLogger("roost.manage")


def _prompt_password(username: str) -> str:
    return getpass.getpass(f"Password for {username}: ")


def init_db(args, storage: SQLiteStorage, config: RoostConfig) -> int:
    """Create the users table or add its missing columns."""
    reconciler = SchemaReconciler(storage, config)
    if not reconciler.ensure_user_table():
        print(f"Error: Could not create table {config.users_table}", file=sys.stderr)
        return 1

    print(f"✓ Table {config.users_table} is up to date")
    return 0


def check_schema(args, storage: SQLiteStorage, config: RoostConfig) -> int:
    """Report expected columns the users table lacks."""
    missing = SchemaReconciler(storage, config).missing_columns()
    if not missing:
        print(f"✓ Table {config.users_table} has all expected columns")
        return 0

    for column in missing:
        print(f"missing: {column}")
    return 1


def add_user(args, storage: SQLiteStorage, config: RoostConfig) -> int:
    """Add a new user with optional password prompt."""
    username = args.username
    password = args.password or _prompt_password(username)

    manager = CredentialManager(storage, MemorySessionStore(), config=config)
    inserted = manager.register_user(
        {config.user_column: username, config.mail_column: args.email}, password
    )
    if inserted != 1:
        print(f"Error: User '{username}' was not inserted", file=sys.stderr)
        return 1

    print(f"✓ User created: {username} <{args.email}>")
    return 0


def list_users(args, storage: SQLiteStorage, config: RoostConfig) -> int:
    """List all users with their last login time."""
    manager = CredentialManager(storage, MemorySessionStore(), config=config)
    users = manager.list_users()

    if not users:
        print("No users found")
        return 0

    print(f"{'Username':<24} {'Email':<32} {'Last login':<20}")
    print("-" * 78)

    for user in users:
        last_login = user.last_login.strftime("%Y-%m-%d %H:%M:%S") if user.last_login else "-"
        print(f"{user.username:<24} {user.email or '-':<32} {last_login:<20}")

    return 0


def change_password(args, storage: SQLiteStorage, config: RoostConfig) -> int:
    """Set a new password for an existing user."""
    username = args.username
    password = args.password or _prompt_password(username)

    manager = CredentialManager(storage, MemorySessionStore(), config=config)
    manager.change_password(username, password)

    print(f"✓ Password changed for {username}")
    return 0


COMMANDS = {
    "init-db": init_db,
    "check-schema": check_schema,
    "add-user": add_user,
    "list-users": list_users,
    "passwd": change_password,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="roost-manage",
        description="Manage the Roost users table and accounts",
    )
    parser.add_argument(
        "--config",
        "-c",
        help="Path to config.json with a 'roost' section",
    )
    parser.add_argument(
        "--db-path",
        help="Path to SQLite database (overrides config)",
    )
    parser.add_argument(
        "--log-level",
        "-l",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("init-db", help="Create or repair the users table")
    subparsers.add_parser("check-schema", help="List columns missing from the users table")

    add_parser = subparsers.add_parser("add-user", help="Add a new user")
    add_parser.add_argument("--username", required=True, help="Username")
    add_parser.add_argument("--email", required=True, help="Email address")
    add_parser.add_argument("--password", help="Password (prompted if omitted)")

    subparsers.add_parser("list-users", help="List all users")

    passwd_parser = subparsers.add_parser("passwd", help="Change a user's password")
    passwd_parser.add_argument("--username", required=True, help="Username")
    passwd_parser.add_argument("--password", help="New password (prompted if omitted)")

    return parser


def main(argv=None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if not args.command:
        parser.print_help()
        return 1

    try:
        config = load_config(args.config) if args.config else RoostConfig()
    except jsonschema.ValidationError as e:
        print(f"Error: Invalid config: {e.message}", file=sys.stderr)
        return 1
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    storage = SQLiteStorage(args.db_path or config.db_path)

    try:
        if args.command not in ("init-db", "check-schema"):
            SchemaReconciler(storage, config).ensure_user_table()
        return COMMANDS[args.command](args, storage, config)
    except RoostError as e:
        logger.debug(f"{args.command} failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        storage.close()


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""
accountd -- command-line administration.

Admins can only be created by another admin over the API, so the first one
has to come from here.

Usage:
  python manage.py create-admin --email admin@example.com --name "Site Admin"
  python manage.py list-users

The password is read interactively (twice) unless --password-stdin is given,
in which case a single line is read from standard input.

Environment variables: the same as the API (SECRET_KEY, DATABASE_URL, ...),
read through core.config.get_settings().
"""

import argparse
import getpass
import sys

from auth.errors import AuthError
from auth.service import build_auth_service
from auth.store import UserStore
from core.config import get_settings
from notify.email import EmailSender


def _read_password(from_stdin: bool) -> tuple[str, str]:
    if from_stdin:
        password = sys.stdin.readline().rstrip("\n")
        return password, password
    return getpass.getpass("Password: "), getpass.getpass("Confirm password: ")


def _create_admin(args: argparse.Namespace, store: UserStore) -> int:
    settings = get_settings()
    service = build_auth_service(settings, store, mailer=EmailSender.from_settings(settings))
    password, confirm = _read_password(args.password_stdin)
    try:
        principal = service.create_admin(args.name, args.email, password, confirm)
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        for err in exc.errors:
            print(f"      {err['field']}: {err['message']}")
        return 1
    print(f"  Admin created: id={principal.id} email={principal.email}")
    return 0


def _list_users(args: argparse.Namespace, store: UserStore) -> int:
    users = store.list_users()
    if not users:
        print("  No users.")
        return 0
    for u in users:
        flags = []
        if u.blocked:
            flags.append("blocked")
        if not u.active:
            flags.append("inactive")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        print(f"  {u.id:>5}  {u.role.value:<5}  {u.provider.value:<8}  {u.email}{suffix}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="manage.py",
        description="accountd administration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command")

    create = sub.add_parser("create-admin", help="create an ADMIN account")
    create.add_argument("--email", required=True, help="admin email address")
    create.add_argument("--name", default="Administrator", help="display name")
    create.add_argument(
        "--password-stdin",
        action="store_true",
        help="read the password from standard input instead of prompting",
    )

    sub.add_parser("list-users", help="list all accounts")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 2

    store = UserStore(get_settings().database_url)
    try:
        if args.command == "create-admin":
            return _create_admin(args, store)
        return _list_users(args, store)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""
LabGate -- Operator CLI for the authentication service.

Usage:
  python main.py create-admin --username admin --email admin@lab.example --name "Lab Admin"
  python main.py generate-password
  python main.py generate-password --length 16
  python main.py reap

Environment variables:
  DATABASE_URL   SQLAlchemy URL of the auth database (default: sqlite file next to this script)
  SECRET_KEY     Required unless DEBUG=true. Keys session identifiers at rest.
"""

import argparse
import getpass
import logging
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional

from auth.errors import DuplicateIdentityError, WeakCredentialError
from auth.hashing import BcryptHasher
from auth.models import NewUser, Role
from auth.policy import generate_password, validate_password
from auth.service import AuthService
from core.config import get_settings

logger = logging.getLogger("labgate.cli")


def _build_service() -> AuthService:
    settings = get_settings()
    return AuthService.from_url(
        settings.database_url,
        settings.secret_key,
        BcryptHasher(rounds=settings.bcrypt_rounds),
    )


def _prompt_password(service: AuthService) -> Optional[str]:
    """Ask for a password twice and check it against the live policy.

    Returns None when the two entries differ or the policy rejects it.
    """
    password = getpass.getpass("  Password: ")
    confirm = getpass.getpass("  Confirm password: ")
    if password != confirm:
        print("  [!] Passwords do not match.")
        return None
    check = validate_password(password, service.config.current())
    if not check.ok:
        print("  [!] Password does not meet the security policy:")
        for message in check.messages:
            print(f"      - {message}")
        return None
    return password


def cmd_create_admin(args: argparse.Namespace) -> int:
    service = _build_service()
    try:
        password = args.password or _prompt_password(service)
        if password is None:
            return 1
        try:
            user = service.users.create(
                NewUser(
                    username=args.username,
                    email=args.email,
                    name=args.name,
                    password=password,
                    role=Role.admin,
                )
            )
        except DuplicateIdentityError as e:
            print(f"  [!] {e}")
            return 1
        except WeakCredentialError as e:
            print("  [!] Password does not meet the security policy:")
            for violation in e.violations:
                print(f"      - {violation}")
            return 1
        print(f"  Admin '{user.username}' created (id {user.id}).")
        return 0
    finally:
        service.close()


def cmd_generate_password(args: argparse.Namespace) -> int:
    service = _build_service()
    try:
        print(generate_password(service.config.current(), length=args.length))
        return 0
    finally:
        service.close()


def cmd_reap(args: argparse.Namespace) -> int:
    settings = get_settings()
    service = _build_service()
    try:
        sessions, attempts = service.reap(
            datetime.now(timezone.utc),
            timedelta(days=settings.attempt_retention_days),
        )
        print(f"  Removed {sessions} expired session(s) and {attempts} old login attempt(s).")
        return 0
    finally:
        service.close()


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    parser = argparse.ArgumentParser(
        prog="labgate",
        description="Operator commands for the LabGate authentication service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin --username admin --email admin@lab.example --name "Lab Admin"
  python main.py generate-password --length 16
  python main.py reap
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p_admin = sub.add_parser("create-admin", help="Create an administrator account")
    p_admin.add_argument("--username", required=True, help="Login username")
    p_admin.add_argument("--email", required=True, help="Login e-mail address")
    p_admin.add_argument("--name", required=True, help="Display name")
    p_admin.add_argument(
        "--password",
        default=None,
        help="Password (prompted when omitted; avoid passing secrets on the command line)",
    )
    p_admin.set_defaults(func=cmd_create_admin)

    p_gen = sub.add_parser("generate-password", help="Print a random password that satisfies the current policy")
    p_gen.add_argument("--length", type=int, default=12, help="Password length (default: 12)")
    p_gen.set_defaults(func=cmd_generate_password)

    p_reap = sub.add_parser("reap", help="Purge expired sessions and aged-out login attempts")
    p_reap.set_defaults(func=cmd_reap)

    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 0
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())

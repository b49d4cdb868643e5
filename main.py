#!/usr/bin/env python3
"""
TaskFlow auth -- maintenance command line.

Usage:
  python main.py purge
  python main.py generate-password
  python main.py check-password 'S3cure!Passw0rd'
  python main.py check-password 'S3cure!Passw0rd' --email jane.doe@example.com --name "Jane Doe"

Configuration comes from the same environment variables / .env file as the
API (SECRET_KEY, DATABASE_URL, PASSWORD_POLICY__*, ...).
"""

import argparse
import logging
import sys

from pydantic import ValidationError

from auth.models import User
from auth.passwords import PasswordPolicy
from auth.service import build_components
from core.config import Settings, get_settings


def _load_settings() -> Settings:
    try:
        return get_settings()
    except ValidationError as e:
        print(f"  [!] Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)


def _purge(settings: Settings) -> int:
    components = build_components(settings)
    try:
        tokens, entries = components.run_retention(settings.audit_retention_days)
    finally:
        components.close()
    print(f"Purged {tokens} expired refresh token(s) and {entries} audit log entries.")
    return 0


def _generate_password(settings: Settings) -> int:
    policy = PasswordPolicy(settings.password_policy, rounds=4)
    print(policy.generate_secure())
    return 0


def _check_password(settings: Settings, password: str, email: str, name: str) -> int:
    policy = PasswordPolicy(settings.password_policy, rounds=4)
    user = User(email=email.strip().lower(), name=name) if (email or name) else None
    check = policy.validate(password, user)
    if check.ok:
        print("Password satisfies the policy.")
        return 0
    print("Password rejected:")
    for violation in check.violations:
        print(f"  - {violation}")
    return 1


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="taskflow-auth",
        description="Maintenance tasks for the TaskFlow auth service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py purge
  python main.py generate-password
  python main.py check-password 'hunter2' --email jane@example.com
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sub.add_parser(
        "purge",
        help="Delete refresh tokens past their retention window and audit entries past AUDIT_RETENTION_DAYS",
    )
    sub.add_parser(
        "generate-password",
        help="Print a random password that satisfies the configured policy",
    )
    check = sub.add_parser(
        "check-password",
        help="Validate a password against the policy and list every failing rule",
    )
    check.add_argument("password", metavar="PASSWORD", help="Password to check")
    check.add_argument(
        "--email",
        default="",
        metavar="EMAIL",
        help="Reject passwords containing parts of this email's local part",
    )
    check.add_argument(
        "--name",
        default="",
        metavar="NAME",
        help="Reject passwords containing parts of this display name",
    )
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")
    settings = _load_settings()

    if args.command == "purge":
        code = _purge(settings)
    elif args.command == "generate-password":
        code = _generate_password(settings)
    else:
        code = _check_password(settings, args.password, args.email, args.name)
    sys.exit(code)


if __name__ == "__main__":
    main()

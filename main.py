#!/usr/bin/env python3
"""
Health Diary auth -- operator command line.

Registration is invite-only, so the first admin has to come from somewhere.
These commands talk to the credential store directly and do not need the API
server to be running.

Usage:
  python main.py create-admin --email admin@example.com --username admin --name "Admin"
  echo "$ADMIN_PASSWORD" | python main.py create-admin --email a@x.com --username a --name A --password-stdin
  python main.py invite --email new.user@example.com --created-by 1
  python main.py reset-password --user-id 2

Environment variables:
  SECRET_KEY     Required unless DEBUG=true. Must match the API server's key,
                 or links minted here will not validate there.
  DATABASE_URL   SQLAlchemy URL of the credential store (default: sqlite:///healthdiary_auth.db)
"""

import argparse
import getpass
import logging
import sys

from auth.errors import AuthError
from auth.rate_limit import RateLimiter
from auth.service import AuthService
from auth.store import CredentialStore
from auth.tokens import TokenService
from core.config import get_settings

logger = logging.getLogger("healthdiary.cli")


def _build_service() -> AuthService:
    settings = get_settings()
    logger.debug("Opening credential store at %s", settings.database_url)
    store = CredentialStore(settings.database_url)
    return AuthService(store, TokenService(settings), RateLimiter(settings.login_window_seconds), settings)


def _read_password(from_stdin: bool) -> str:
    """Read the new password without echoing it, or from stdin for scripted use."""
    if from_stdin:
        return sys.stdin.readline().rstrip("\n")
    password = getpass.getpass("Password: ")
    if password != getpass.getpass("Repeat password: "):
        print("  [!] Passwords do not match.", file=sys.stderr)
        sys.exit(1)
    return password


def cmd_create_admin(service: AuthService, args: argparse.Namespace) -> None:
    password = _read_password(args.password_stdin)
    user = service.create_admin(args.email, args.username, args.name, password)
    print(f"Admin user created: id={user.id} email={user.email}")


def cmd_invite(service: AuthService, args: argparse.Namespace) -> None:
    creator = service.store.get_by_id(args.created_by)
    if creator is None:
        print(f"  [!] No user with id {args.created_by}.", file=sys.stderr)
        sys.exit(1)
    if not creator.is_admin:
        print(f"  [!] User {args.created_by} is not an admin.", file=sys.stderr)
        sys.exit(1)
    invite = service.generate_invite(args.email, created_by=args.created_by)
    print(f"Invite for {invite.email} (expires {invite.expires_at.isoformat()}):")
    print(invite.token)


def cmd_reset_password(service: AuthService, args: argparse.Namespace) -> None:
    link = service.generate_password_reset(args.user_id)
    print(f"Password reset token for user {args.user_id} (expires {link.expires_at.isoformat()}):")
    print(link.token)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="healthdiary-auth",
        description="Operator commands for the Health Diary credential store.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    sub = parser.add_subparsers(dest="command", required=True)

    p_admin = sub.add_parser("create-admin", help="Create an admin account without an invite")
    p_admin.add_argument("--email", required=True)
    p_admin.add_argument("--username", required=True)
    p_admin.add_argument("--name", required=True)
    p_admin.add_argument(
        "--password-stdin",
        action="store_true",
        help="Read the password from the first line of stdin instead of prompting",
    )
    p_admin.set_defaults(func=cmd_create_admin)

    p_invite = sub.add_parser("invite", help="Mint an invite link token for an email address")
    p_invite.add_argument("--email", required=True)
    p_invite.add_argument("--created-by", type=int, required=True, metavar="USER_ID", help="Issuing admin's user id")
    p_invite.set_defaults(func=cmd_invite)

    p_reset = sub.add_parser("reset-password", help="Mint a one-hour password reset token for a user")
    p_reset.add_argument("--user-id", type=int, required=True)
    p_reset.set_defaults(func=cmd_reset_password)

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    service = _build_service()
    try:
        args.func(service, args)
    except AuthError as exc:
        print(f"  [!] {exc.message} ({exc.code})", file=sys.stderr)
        sys.exit(1)
    finally:
        service.store.close()


if __name__ == "__main__":
    main()

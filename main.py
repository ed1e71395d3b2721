#!/usr/bin/env python3
"""
CodeGuard -- operator command line.

Usage:
  python main.py serve [--host 127.0.0.1] [--port 8000] [--reload]
  python main.py create-user USERNAME --role admin
  python main.py issue-token USERNAME [--expires 3600]

Environment variables are read through core.config (SECRET_KEY, DATABASE_URL,
DEBUG, ...). The password for create-user is prompted for, never taken from
the command line, so it does not end up in shell history.
"""

import argparse
import getpass
import sys

from sqlalchemy.exc import IntegrityError

from auth.models import User
from auth.store import UserStore
from auth.tokens import create_access_token, hash_password
from core.config import get_settings
from core.errors import DependencyUnavailable
from core.models import PASSWORD_MAX_BYTES, ROLES


def _create_user(args: argparse.Namespace) -> int:
    settings = get_settings()
    password = getpass.getpass("Password: ")
    if len(password) < 8 or len(password.encode("utf-8")) > PASSWORD_MAX_BYTES:
        print(f"  [!] Password must be at least 8 characters and at most {PASSWORD_MAX_BYTES} bytes.")
        return 1
    if password != getpass.getpass("Repeat password: "):
        print("  [!] Passwords do not match.")
        return 1

    store = UserStore(settings.database_url, settings.dependency_timeout_seconds)
    try:
        uid = store.create_user(User(username=args.username, role=args.role, hashed_password=hash_password(password)))
    except IntegrityError:
        print(f"  [!] User '{args.username}' already exists.")
        return 1
    except DependencyUnavailable as exc:
        print(f"  [!] User store unavailable: {exc}")
        return 2
    finally:
        store.close()
    print(f"  Created {args.role} '{args.username}' (id {uid}).")
    return 0


def _issue_token(args: argparse.Namespace) -> int:
    settings = get_settings()
    store = UserStore(settings.database_url, settings.dependency_timeout_seconds)
    try:
        user = store.get_by_username(args.username)
    except DependencyUnavailable as exc:
        print(f"  [!] User store unavailable: {exc}")
        return 2
    finally:
        store.close()
    if user is None or not user.is_active:
        print(f"  [!] No active user named '{args.username}'.")
        return 1
    print(create_access_token(user.id, user.username, user.role, args.expires, secret_key=settings.secret_key))
    return 0


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("asgi:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="codeguard",
        description="Signup-code issuance, verification and abuse prevention.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user alice --role admin
  python main.py issue-token alice --expires 600
  python main.py serve --port 8080
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p_serve = sub.add_parser("serve", help="Run the API with uvicorn")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.add_argument("--reload", action="store_true", help="Reload on source changes (development only)")
    p_serve.set_defaults(func=_serve)

    p_user = sub.add_parser("create-user", help="Create a user; the password is prompted for")
    p_user.add_argument("username")
    p_user.add_argument("--role", choices=ROLES, default="customer")
    p_user.set_defaults(func=_create_user)

    p_token = sub.add_parser("issue-token", help="Print a bearer token for an existing user")
    p_token.add_argument("username")
    p_token.add_argument(
        "--expires",
        type=int,
        default=0,
        metavar="SECONDS",
        help="Token lifetime in seconds (default: TOKEN_EXPIRE_SECONDS)",
    )
    p_token.set_defaults(func=_issue_token)

    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 0
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())

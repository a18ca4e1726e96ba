#!/usr/bin/env python3
"""
Portcullis -- operator CLI for the authentication backend.

Usage:
  python main.py create-user alice@example.com
  python main.py create-user admin@example.com --admin --first-name Ada
  python main.py create-user ops@example.com --password
  python main.py generate-api-key --email admin@example.com --name ci
  python main.py purge
  python main.py serve --host 0.0.0.0 --port 8000

Configuration comes from the environment / .env exactly as for the server
(see core/config.py). DATABASE_URL selects the database the commands act on.
"""

import argparse
import getpass
import sys

from sqlalchemy.exc import IntegrityError

from auth.credentials import is_valid_email, normalize_email
from auth.errors import ValidationError
from auth.models import ApiKey, User
from auth.passwords import PasswordHasher, check_password_policy
from auth.store import AccountStore
from auth.tokens import TokenCodec
from core.config import get_settings

DEFAULT_ROLES = ["user", "admin"]


def _accounts() -> AccountStore:
    store = AccountStore(get_settings().database_url)
    store.ensure_roles(DEFAULT_ROLES)
    return store


def cmd_create_user(args: argparse.Namespace) -> int:
    email = normalize_email(args.email)
    if not is_valid_email(email):
        print(f"  [!] '{args.email}' is not a valid email address.")
        return 2
    hashed_password = None
    if args.password:
        settings = get_settings()
        plain = getpass.getpass("Password: ")
        try:
            check_password_policy(plain, settings.password_min_length)
        except ValidationError as exc:
            print(f"  [!] {exc.message}")
            return 2
        hashed_password = PasswordHasher(settings.password_hash_rounds).hash(plain)
    roles = ["user", "admin"] if args.admin else ["user"]
    store = _accounts()
    try:
        user_id = store.create_user(
            User(
                email=email,
                first_name=args.first_name,
                last_name=args.last_name,
                email_verified=args.verified,
                roles=roles,
                hashed_password=hashed_password,
            )
        )
    except IntegrityError:
        print(f"  [!] An account for {email} already exists.")
        return 1
    finally:
        store.close()
    print(f"Created user {user_id}: {email} (roles: {', '.join(roles)})")
    return 0


def cmd_generate_api_key(args: argparse.Namespace) -> int:
    settings = get_settings()
    codec = TokenCodec(settings)
    store = _accounts()
    try:
        user = store.get_by_email(normalize_email(args.email))
        if user is None:
            print(f"  [!] No account for {args.email}.")
            return 1
        raw_key = codec.generate_api_key()
        key_id = store.create_api_key(
            ApiKey(user_id=user.id, name=args.name, key_hash=codec.hash_api_key(raw_key), key_prefix=raw_key[:12])
        )
    finally:
        store.close()
    print(f"API key {key_id} created for {user.email}.")
    print("Store it now -- it cannot be shown again:\n")
    print(f"  {raw_key}\n")
    return 0


def cmd_purge(args: argparse.Namespace) -> int:
    # Imported lazily: building the app is only needed for this command.
    from fastapi import FastAPI

    from api.main import init_services, purge_expired

    settings = get_settings()
    app = FastAPI()
    init_services(app, settings)
    try:
        counts = purge_expired(app)
    finally:
        app.state.accounts.close()
        app.state.secrets.close()
    print(
        f"Removed {counts['magic_links']} magic link token(s), {counts['otp_codes']} expired code(s) "
        f"and {counts['password_resets']} password reset token(s)."
    )
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("api.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="portcullis",
        description="Operator commands for the Portcullis authentication backend.",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("create-user", help="Create an account")
    p.add_argument("email", help="Account email address")
    p.add_argument("--first-name", default=None)
    p.add_argument("--last-name", default=None)
    p.add_argument("--admin", action="store_true", help="Grant the admin role as well as user")
    p.add_argument("--verified", action="store_true", help="Mark the email address as already verified")
    p.add_argument("--password", action="store_true", help="Prompt for a password to allow password login")
    p.set_defaults(func=cmd_create_user)

    p = sub.add_parser("generate-api-key", help="Generate an API key for an existing account")
    p.add_argument("--email", required=True, help="Email of the key owner")
    p.add_argument("--name", default="default", help="Label shown when listing keys")
    p.set_defaults(func=cmd_generate_api_key)

    p = sub.add_parser("purge", help="Delete expired or used magic links, one-time codes and reset tokens")
    p.set_defaults(func=cmd_purge)

    p = sub.add_parser("serve", help="Run the API server with uvicorn")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8000)
    p.add_argument("--reload", action="store_true", help="Reload on code changes (development)")
    p.set_defaults(func=cmd_serve)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 0
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())

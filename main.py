#!/usr/bin/env python3
"""
StepGate -- administrative CLI for the user and passkey database.

Usage:
  python main.py hash-password
  python main.py create-user admin admin@example.com
  python main.py import-passkey admin <credential-id> key.pem --sign-count 0
  python main.py list-users
  python main.py --db-url sqlite:///other.db list-users

Passwords are always read with a hidden prompt, never from argv, so they do
not end up in shell history.

import-passkey attaches a public key that was registered elsewhere. This is
administrative seeding, not the WebAuthn registration ceremony.
"""

import argparse
import getpass
import sys
from pathlib import Path
from typing import Optional

from cryptography.hazmat.primitives import serialization
from sqlalchemy.exc import IntegrityError

from auth.models import Passkey, User
from auth.store import UserStore
from auth.tokens import hash_password


def _prompt_password(confirm: bool = True) -> Optional[str]:
    """Prompt for a password twice. Returns None (after printing why) on mismatch or empty input."""
    password = getpass.getpass("Password: ")
    if not password:
        print("  [!] Password must not be empty.")
        return None
    if confirm and getpass.getpass("Confirm password: ") != password:
        print("  [!] Passwords do not match.")
        return None
    return password


def _load_public_key_pem(path: str) -> Optional[str]:
    """Read a PEM public key and check it parses. Returns the PEM text or None."""
    pem_path = Path(path).resolve()
    if not pem_path.is_file():
        print(f"  [!] '{path}' is not a readable file.")
        return None
    try:
        pem = pem_path.read_text()
        serialization.load_pem_public_key(pem.encode("ascii"))
    except (OSError, UnicodeError, ValueError) as e:
        print(f"  [!] Could not load a PEM public key from '{path}': {e}")
        return None
    return pem


def _open_store(db_url: Optional[str]) -> UserStore:
    if db_url is None:
        from core.config import get_settings

        db_url = get_settings().db_url
    return UserStore(db_url)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_hash_password(args: argparse.Namespace) -> int:
    password = _prompt_password()
    if password is None:
        return 1
    print(hash_password(password))
    return 0


def cmd_create_user(args: argparse.Namespace) -> int:
    password = _prompt_password()
    if password is None:
        return 1
    store = _open_store(args.db_url)
    try:
        user_id = store.create_user(
            User(username=args.username, email=args.email, password_hash=hash_password(password))
        )
    except IntegrityError:
        print(f"  [!] User '{args.username}' already exists.")
        return 1
    finally:
        store.close()
    print(f"  Created user '{args.username}' (id {user_id}).")
    return 0


def cmd_import_passkey(args: argparse.Namespace) -> int:
    pem = _load_public_key_pem(args.pem_file)
    if pem is None:
        return 1
    if args.sign_count < 0:
        print("  [!] --sign-count must be zero or positive.")
        return 1
    store = _open_store(args.db_url)
    try:
        user = store.get_by_username(args.username)
        if user is None:
            print(f"  [!] No such user '{args.username}'.")
            return 1
        store.add_passkey(
            user.id,
            Passkey(credential_id=args.credential_id, public_key_pem=pem, sign_count=args.sign_count),
        )
    except IntegrityError:
        print(f"  [!] '{args.username}' already has a passkey with that credential id.")
        return 1
    finally:
        store.close()
    print(f"  Passkey {args.credential_id} attached to '{args.username}'.")
    return 0


def cmd_list_users(args: argparse.Namespace) -> int:
    store = _open_store(args.db_url)
    try:
        users = store.list_users()
    finally:
        store.close()
    if not users:
        print("  No users.")
        return 0
    for user in users:
        status = "" if user.is_active else " (inactive)"
        print(f"  {user.id:>4}  {user.username:<24} {user.email}{status}")
        for passkey in user.passkeys:
            print(f"        passkey {passkey.credential_id}  sign_count={passkey.sign_count}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stepgate",
        description="StepGate -- manage users and passkeys for three-step sign-in.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
        "  python main.py create-user admin admin@example.com\n"
        "  python main.py import-passkey admin AbC123 key.pem --sign-count 3\n"
        "  python main.py list-users",
    )
    parser.add_argument(
        "--db-url",
        default=None,
        metavar="URL",
        help="SQLAlchemy database URL (default: DB_URL from the environment or .env)",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("hash-password", help="Prompt for a password and print its scrypt hash")
    p.set_defaults(func=cmd_hash_password)

    p = sub.add_parser("create-user", help="Create a user (password is prompted)")
    p.add_argument("username")
    p.add_argument("email")
    p.set_defaults(func=cmd_create_user)

    p = sub.add_parser("import-passkey", help="Attach an existing passkey public key to a user")
    p.add_argument("username")
    p.add_argument("credential_id", metavar="CREDENTIAL_ID", help="base64url credential id")
    p.add_argument("pem_file", metavar="PEM_FILE", help="SubjectPublicKeyInfo PEM file")
    p.add_argument(
        "--sign-count",
        type=int,
        default=0,
        metavar="N",
        help="Authenticator signature counter already observed (default: 0)",
    )
    p.set_defaults(func=cmd_import_passkey)

    p = sub.add_parser("list-users", help="List users and their passkey ids")
    p.set_defaults(func=cmd_list_users)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""Out-of-band account and device administration.

Usage:
    python scripts/manage.py create-user --email ana@example.com --national-id 12345678-5 --password 'S3cure pass'
    python scripts/manage.py unblock 12.345.678-5
    python scripts/manage.py verify-email ana@example.com
    python scripts/manage.py require-reset ana@example.com
    python scripts/manage.py detach-device <fingerprint>

Accounts are addressed by email or national ID, the same identifiers login
accepts.

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    ADMIN_PASSWORD: default for --password on create-user
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _require_user(runtime, identifier: str):
    from payauth.service.errors import NotFoundError
    from payauth.service.identifiers import resolve_user

    user = resolve_user(runtime.store, identifier)
    if user is None:
        raise NotFoundError(f"no account matches {identifier!r}")
    return user


async def create_user(runtime, email: str, national_id: str, password: str) -> dict:
    from payauth.service.errors import ValidationError
    from payauth.service.identifiers import parse_national_id

    parsed = parse_national_id(national_id)
    if parsed is None:
        raise ValidationError("national id must look like 12345678-5")
    user, event = await runtime.auth.register_user(
        email, parsed.number, parsed.check_digit, password, email_verified=True
    )
    runtime.events.dispatch(event)
    return {
        "user_id": user.id,
        "email": user.email,
        "national_id": user.national_id_display,
        "status": "created",
    }


def unblock(runtime, identifier: str) -> dict:
    user = _require_user(runtime, identifier)
    user = runtime.auth.unblock_account(user.id)
    return {"user_id": user.id, "state": user.state.value, "status": "unblocked"}


def verify_email(runtime, identifier: str) -> dict:
    user = _require_user(runtime, identifier)
    user = runtime.store.mark_email_verified(user.id)
    return {"user_id": user.id, "email": user.email, "status": "email_verified"}


def require_reset(runtime, identifier: str) -> dict:
    user = _require_user(runtime, identifier)
    user = runtime.auth.require_password_reset(user.id)
    return {"user_id": user.id, "state": user.state.value, "status": "reset_required"}


def detach_device(runtime, fingerprint: str) -> dict:
    count = runtime.auth.devices.detach(fingerprint, details="detached by operator")
    return {"fingerprint": fingerprint, "detached": count, "status": "detached"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage payauth accounts and devices",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    commands = parser.add_subparsers(dest="command", required=True)

    create = commands.add_parser("create-user", help="Create an account with a password")
    create.add_argument("--email", required=True)
    create.add_argument("--national-id", required=True, help="e.g. 12345678-5")
    create.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Password (or set ADMIN_PASSWORD env var)",
    )

    unblock_cmd = commands.add_parser("unblock", help="Unblock a locked account")
    unblock_cmd.add_argument("identifier")

    verify_cmd = commands.add_parser(
        "verify-email", help="Mark an account's email address as verified"
    )
    verify_cmd.add_argument("identifier")

    reset_cmd = commands.add_parser(
        "require-reset", help="Force a password reset and close all sessions"
    )
    reset_cmd.add_argument("identifier")

    detach_cmd = commands.add_parser("detach-device", help="Remove a device's owner")
    detach_cmd.add_argument("fingerprint")
    return parser


async def run(args: argparse.Namespace) -> dict:
    # Import here to avoid loading config before env vars are set
    from payauth.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        if args.command == "create-user":
            return await create_user(runtime, args.email, args.national_id, args.password)
        if args.command == "unblock":
            return unblock(runtime, args.identifier)
        if args.command == "verify-email":
            return verify_email(runtime, args.identifier)
        if args.command == "require-reset":
            return require_reset(runtime, args.identifier)
        return detach_device(runtime, args.fingerprint)
    finally:
        await runtime.close()


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "create-user" and not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        return 1

    if not os.environ.get("DATABASE_URL"):
        os.environ.setdefault("USE_MEMORY_STORE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from payauth.service.errors import ServiceError

    try:
        result = asyncio.run(run(args))
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        return 1

    for key, value in result.items():
        print(f"  {key}: {value}")
    return 0


if __name__ == "__main__":
    sys.exit(main())

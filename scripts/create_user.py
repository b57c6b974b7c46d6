#!/usr/bin/env python3
"""Create a login or change an existing one's password or active flag.

Usage:
    # Using environment variables:
    USER_EMAIL=user@example.com USER_PASSWORD='CorrectPass1!' python scripts/create_user.py

    # Or with command line args:
    python scripts/create_user.py --email user@example.com --password 'CorrectPass1!'

    # Disable a login without deleting it:
    python scripts/create_user.py --email user@example.com --deactivate

Configuration is loaded the same way the server loads it (config/*.toml plus
APP__ environment variables), so APP__ENV must be set.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys

from chatauth.config import load_settings
from chatauth.service.errors import ConfigError, ServiceError
from chatauth.service.runtime import Runtime
from chatauth.storage.errors import ConstraintViolation


def validate_password(password: str) -> bool:
    """At least 8 characters and three of: upper, lower, digit, symbol."""
    if len(password) < 8:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def upsert_user(
    runtime: Runtime,
    email: str,
    password: str | None,
    *,
    full_name: str = "",
    active: bool | None = None,
    dry_run: bool = False,
) -> dict:
    """Create the user, or update the password/active flag of an existing one.

    Returns:
        dict with user_id, email and status ('created', 'updated', 'unchanged' or 'dry_run')
    """
    store = runtime.store
    existing = await asyncio.to_thread(store.get_user_by_email, email)

    if existing is None:
        if not password:
            raise ValueError(f"user {email} does not exist; --password is required to create it")
        if dry_run:
            return {"user_id": None, "email": email, "status": "dry_run"}
        user = await runtime.auth.register(email, password, full_name)
        if active is False:
            await asyncio.to_thread(store.set_user_active, user.id, False)
        return {"user_id": user.id, "email": user.email, "status": "created"}

    changes = []
    if password:
        changes.append("password")
    if active is not None and active != existing.is_active:
        changes.append("active")
    if not changes:
        return {"user_id": existing.id, "email": existing.email, "status": "unchanged"}
    if dry_run:
        return {"user_id": existing.id, "email": existing.email, "status": "dry_run", "changes": changes}

    if password:
        new_hash = await asyncio.to_thread(runtime.auth.passwords.hash, password)
        await asyncio.to_thread(store.update_password_hash, existing.id, new_hash)
        # A new password ends any session started with the old one
        await runtime.auth.revoke(existing.id)
    if "active" in changes:
        await asyncio.to_thread(store.set_user_active, existing.id, active)
        if not active:
            await runtime.auth.revoke(existing.id)
    return {"user_id": existing.id, "email": existing.email, "status": "updated", "changes": changes}


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Create or update a chatauth login",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("USER_EMAIL"),
        help="Login email (or set USER_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("USER_PASSWORD"),
        help="Password to set (or set USER_PASSWORD env var)",
    )
    parser.add_argument("--full-name", default="", help="Display name for new users")
    active_group = parser.add_mutually_exclusive_group()
    active_group.add_argument("--activate", dest="active", action="store_true", default=None)
    active_group.add_argument("--deactivate", dest="active", action="store_false")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or USER_EMAIL environment variable required")
        sys.exit(1)
    if args.password and not validate_password(args.password):
        print("Error: Password must be at least 8 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    try:
        settings = load_settings()
    except ConfigError as exc:
        print(f"Error: invalid configuration: {exc}")
        sys.exit(1)

    runtime = Runtime(settings)
    try:
        result = asyncio.run(
            upsert_user(
                runtime,
                args.email.strip().lower(),
                args.password,
                full_name=args.full_name,
                active=args.active,
                dry_run=args.dry_run,
            )
        )
    except (ValueError, ConstraintViolation, ServiceError) as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    finally:
        runtime.close()

    print(f"{result['status']}: {result['email']} (id: {result['user_id']})")
    if result.get("changes"):
        print(f"  changed: {', '.join(result['changes'])}")


if __name__ == "__main__":
    main()

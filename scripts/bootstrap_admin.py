#!/usr/bin/env python3
"""Bootstrap the first admin account and mark the system as initialized.

Registration is refused until ``is_system_initialized`` is set, so a fresh
deployment runs this once before opening sign-ups.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=admin ADMIN_PASSWORD='Str0ng!Passphrase' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username admin --email admin@example.com \
        --password 'Str0ng!Passphrase' --allow-registration

Environment Variables:
    ADMIN_USERNAME: Username for the admin account
    ADMIN_EMAIL: Optional email for the admin account
    ADMIN_PASSWORD: Password for the admin account (must pass the password policy)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(
    username: str,
    password: str,
    *,
    email: Optional[str] = None,
    allow_registration: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create or promote an admin user and write the system flags.

    Returns:
        dict with user_id, username, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from sessionguard.service.runtime import get_runtime
    from sessionguard.storage.common import (
        ALLOW_REGISTRATION_KEY,
        SYSTEM_INITIALIZED_KEY,
    )
    from sessionguard.storage.models import UserRole

    runtime = get_runtime()
    await runtime.startup()
    try:
        existing_user = await runtime.store.get_user_by_username(username)
        if existing_user is None and email:
            existing_user = await runtime.store.get_user_by_email(email)

        if dry_run:
            action = "promote" if existing_user else "create"
            print(f"[DRY RUN] Would {action} admin user: {username}")
            return {
                "user_id": existing_user.id if existing_user else None,
                "username": username,
                "status": "dry_run",
            }

        if existing_user and existing_user.role == UserRole.ADMIN:
            status = "already_admin"
            user_id = existing_user.id
            print(f"User {username} already exists as admin (id: {user_id})")
        elif existing_user:
            result = await runtime.auth.set_user_role(existing_user.id, UserRole.ADMIN)
            if not result.success:
                raise RuntimeError(result.message)
            status = "promoted"
            user_id = existing_user.id
            print(f"Promoted existing user {username} to admin (id: {user_id})")
        else:
            strength = runtime.passwords.score(password)
            if strength.failed_checks:
                raise ValueError("; ".join(strength.suggestions))
            user = await runtime.store.create_user(
                username,
                runtime.passwords.hash(password),
                email=email,
                role=UserRole.ADMIN,
            )
            status = "created"
            user_id = user.id
            print(f"Created admin user: {username} (id: {user_id})")

        await runtime.store.set_system_setting(SYSTEM_INITIALIZED_KEY, "true")
        await runtime.store.set_system_setting(
            ALLOW_REGISTRATION_KEY, "true" if allow_registration else "false"
        )
        return {"user_id": user_id, "username": username, "status": status}
    finally:
        await runtime.shutdown()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for SessionGuard",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
        help="Admin username (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--allow-registration",
        action="store_true",
        help="Open self-service registration after bootstrapping",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.username:
        print("Error: --username or ADMIN_USERNAME environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/sessionguard-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using file-backed memory store (set DATABASE_URL for Postgres)")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.username,
                args.password,
                email=args.email,
                allow_registration=args.allow_registration,
                dry_run=args.dry_run,
            )
        )
    except (ValueError, RuntimeError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()

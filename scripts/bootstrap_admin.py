#!/usr/bin/env python3
"""Seed a verified Super Admin account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123! [--reset-password]

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (at least 8 characters)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    JWT_SECRET: Signing secret; required unless TEST_MODE is enabled
"""
from __future__ import annotations

import argparse
import os
import sys

from authcore.service.auth import normalize_email, validate_email, validate_password
from authcore.service.errors import ValidationError


def bootstrap_admin(email: str, password: str, *, reset_password: bool = False, dry_run: bool = False) -> dict:
    """Create the admin account, or promote and verify an existing one."""
    # Imported late so the environment set up by main() is seen by the settings loader.
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    admin_role = runtime.settings.admin_role
    existing = runtime.store.get_user_by_email_including_unverified(email)

    if existing:
        if existing.role == admin_role and existing.is_verified and not reset_password:
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.update_user_role(existing.id, admin_role)
        runtime.store.update_verification_status(existing.id, True)
        if reset_password:
            runtime.store.update_password(existing.id, runtime.auth.hash_password(password))
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.store.create_user(
        email,
        runtime.auth.hash_password(password),
        role=admin_role,
        is_verified=True,
    )
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Seed a Super Admin account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument(
        "--reset-password",
        action="store_true",
        help="Overwrite the password of an existing account",
    )
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    email = normalize_email(args.email)
    try:
        validate_email(email)
        validate_password(args.password, args.password)
    except ValidationError as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    result = bootstrap_admin(
        email, args.password, reset_password=args.reset_password, dry_run=args.dry_run
    )
    messages = {
        "created": "Admin user created",
        "promoted": "Existing user promoted to admin",
        "already_admin": "No changes needed - user is already an admin",
        "dry_run": "[DRY RUN] No changes made",
    }
    print(f"{messages[result['status']]}: {result['email']} (id: {result['user_id']})")


if __name__ == "__main__":
    main()

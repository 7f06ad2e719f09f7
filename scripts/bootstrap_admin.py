#!/usr/bin/env python3
"""Create or promote an admin account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(email: str, password: str, *, name: str | None = None, dry_run: bool = False, runtime=None) -> dict:
    """Create an admin user, or promote and reactivate an existing one.

    Returns:
        dict with user_id, email, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    from authcore.service.credentials import normalize_email
    from authcore.service.runtime import get_runtime

    runtime = runtime or get_runtime()
    email = normalize_email(email)
    existing = runtime.store.get_user_by_email(email)

    if existing:
        if existing.role == "admin" and existing.is_active:
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.update_user_role(existing.id, "admin")
        if not existing.is_active:
            runtime.store.set_user_active(existing.id, True)
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.store.create_user(
        email,
        runtime.credentials.hash_password(password),
        name=name,
        role="admin",
        now=runtime.clock.now(),
    )
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for AuthCore",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
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
    parser.add_argument("--name", default=None, help="Display name")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = bootstrap_admin(args.email, args.password, name=args.name, dry_run=args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    status = result["status"]
    if status == "created":
        print(f"Created admin user: {result['email']} (id: {result['user_id']})")
    elif status == "promoted":
        print(f"Promoted existing user {result['email']} to admin (id: {result['user_id']})")
    elif status == "already_admin":
        print(f"User {result['email']} already exists as admin (id: {result['user_id']})")
    else:
        print(f"[DRY RUN] No changes made for {result['email']}")


if __name__ == "__main__":
    main()

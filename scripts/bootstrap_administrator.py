#!/usr/bin/env python3
"""Create the first administrator account.

Administrators cannot self-register and admins are only created by approving
an admin request, so the initial administrator is seeded out of band.

Usage:
    # Using environment variables:
    ADMINISTRATOR_EMAIL=root@example.com ADMINISTRATOR_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_administrator.py

    # Or with command line args:
    python scripts/bootstrap_administrator.py --email root@example.com \
        --password SecurePassword123! --full-name "Site Owner"

Environment Variables:
    ADMINISTRATOR_EMAIL: Email for the administrator
    ADMINISTRATOR_PASSWORD: Password (must meet complexity requirements)
    ADMINISTRATOR_NAME: Display name (defaults to "Administrator")
    DATABASE_URL: PostgreSQL connection string (memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
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


def bootstrap_administrator(
    email: str, password: str, full_name: str, dry_run: bool = False
) -> dict:
    """Create the administrator unless one with this email exists.

    Returns:
        dict with account_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from sakalsense.config import Role, get_settings
    from sakalsense.service.auth import normalize_email
    from sakalsense.service.passwords import Passwords
    from sakalsense.storage.memory import MemoryStore
    from sakalsense.storage.postgres import PostgresStore

    settings = get_settings()
    store = MemoryStore() if settings.use_memory_store else PostgresStore(settings.database_url)
    email = normalize_email(email)
    try:
        existing = store.get_account_by_email(Role.ADMINISTRATOR, email)
        if existing:
            print(f"Administrator {email} already exists (id: {existing.id})")
            return {"account_id": existing.id, "email": email, "status": "exists"}

        if dry_run:
            print(f"[DRY RUN] Would create administrator: {email}")
            return {"account_id": None, "email": email, "status": "dry_run"}

        pwd_hash, algo = Passwords().hash_password(password)
        account = store.create_account(Role.ADMINISTRATOR, email, full_name, pwd_hash, algo)
        print(f"Created administrator: {email} (id: {account.id})")
        return {"account_id": account.id, "email": email, "status": "created"}
    finally:
        store.close()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator for SakalSense",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMINISTRATOR_EMAIL"),
        help="Administrator email (or set ADMINISTRATOR_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMINISTRATOR_PASSWORD"),
        help="Administrator password (or set ADMINISTRATOR_PASSWORD env var)",
    )
    parser.add_argument(
        "--full-name",
        default=os.environ.get("ADMINISTRATOR_NAME", "Administrator"),
        help="Display name (or set ADMINISTRATOR_NAME env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMINISTRATOR_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMINISTRATOR_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    # Settings refuse to load without a signing secret; none is needed here
    if not os.environ.get("JWT_SECRET"):
        import secrets
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = bootstrap_administrator(
            args.email, args.password, args.full_name.strip() or "Administrator", args.dry_run
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdministrator created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "exists":
        print("\nNo changes needed - administrator already exists.")


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""Bootstrap an ADMIN account; the role cannot be chosen through registration.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure#Pass123' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure#Pass123'

    # Show existing admin accounts:
    python scripts/bootstrap_admin.py --list

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (same policy as registration)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create a verified ADMIN account.

    Returns:
        dict with user_id, email, and status ('created', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from rentease.service.auth import PASSWORD_POLICY_MESSAGE, password_meets_policy
    from rentease.service.runtime import get_runtime
    from rentease.storage.models import ROLE_ADMIN

    if not password_meets_policy(password):
        raise ValueError(PASSWORD_POLICY_MESSAGE)

    runtime = get_runtime()
    existing_user = runtime.store.find_by_email(email)

    if existing_user:
        if existing_user.role == ROLE_ADMIN:
            print(f"User {email} already exists as admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "already_admin"}
        # Roles are fixed once an account exists
        raise ValueError(f"{email} is already registered as {existing_user.role}")

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.store.create(email, runtime.auth._hash_password(password), ROLE_ADMIN)
    runtime.store.update_by_id(user.id, is_verified=True)

    print(f"Created admin user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def list_admins(limit: int = 100) -> list:
    from rentease.service.runtime import get_runtime
    from rentease.storage.models import ROLE_ADMIN

    runtime = get_runtime()
    return runtime.store.list_users(limit, role=ROLE_ADMIN)


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for RentEase",
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
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    parser.add_argument(
        "--list",
        action="store_true",
        help="List existing admin accounts and exit",
    )

    args = parser.parse_args()

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/rentease-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    # The script never touches sessions or OTPs
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    if args.list:
        for user in list_admins():
            print(f"{user.id}  {user.email}  created {user.created_at.isoformat()}")
        return

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    try:
        result = bootstrap_admin(args.email, args.password, args.dry_run)
    except (ValueError, RuntimeError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()

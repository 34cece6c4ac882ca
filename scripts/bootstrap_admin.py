#!/usr/bin/env python3
"""Create the first admin account for a fresh deployment.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=ops@hotel.example ADMIN_PASSWORD='Harbour-View-2024!' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email ops@hotel.example --password 'Harbour-View-2024!' --name "Front Desk"

The admin still signs in through the normal login + one-time code flow.

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (must pass the password policy)
    DATABASE_URL: PostgreSQL connection string (memory store is used when unset)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(email: str, password: str, full_name: str, dry_run: bool = False) -> dict:
    """Create an admin account unless one already exists for ``email``.

    Returns:
        dict with account_id, email and status ('created', 'already_admin'
        or 'dry_run')

    Raises:
        ValueError: if the password fails the policy or the email belongs to
            a guest account
    """
    # Import here so config is read after the env defaults below are applied
    from hotelbook.service.auth import normalize_email
    from hotelbook.service.password_policy import validate_strength
    from hotelbook.service.runtime import get_runtime
    from hotelbook.storage.models import Account, AccountRole

    runtime = get_runtime()
    email = normalize_email(email)
    existing = runtime.store.get_account_by_email(email)

    if existing:
        if existing.role == AccountRole.ADMIN.value:
            print(f"Account {email} is already an admin (id: {existing.id})")
            return {"account_id": existing.id, "email": email, "status": "already_admin"}
        # Roles are fixed at creation; a guest account is never promoted
        raise ValueError(f"{email} is registered as a guest account")

    policy = validate_strength(password)
    if not policy.valid:
        raise ValueError("; ".join(policy.violations))

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    account = Account.new(
        email,
        full_name,
        runtime.auth.hasher.hash(password),
        role=AccountRole.ADMIN.value,
    )
    account = runtime.store.create_account(account)
    print(f"Created admin account: {email} (id: {account.id})")
    return {"account_id": account.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for Hotelbook",
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
    parser.add_argument("--name", default="Administrator", help="Display name")
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

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(args.email, args.password, args.name, args.dry_run)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin account created. Sign in with the login + one-time code flow.")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - account is already an admin.")


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""Create a pre-verified user, skipping the verification mail.

Usage:
    # Using environment variables:
    USER_EMAIL=ops@example.com USER_PASSWORD='Secure#Pass1' python scripts/create_user.py --name Ops

    # Or with command line args:
    python scripts/create_user.py --name Ops --email ops@example.com --password 'Secure#Pass1'

Environment Variables:
    USER_EMAIL: Email for the user
    USER_PASSWORD: Password for the user (must satisfy the password policy)
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


def create_verified_user(name: str, email: str, password: str, dry_run: bool = False) -> dict:
    """Create the user, or mark an existing one verified.

    Returns:
        dict with user_id, email, and status ('created', 'verified', 'unchanged' or 'dry_run')
    """
    # Import here so the env defaults below are in place before settings load
    from llmhub.service.passwords import hash_password
    from llmhub.service.runtime import get_runtime

    runtime = get_runtime()
    email = email.strip().lower()
    existing = runtime.store.get_user_by_email(email)

    if existing:
        if existing.email_verified:
            print(f"User {email} already exists and is verified (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "unchanged"}
        if dry_run:
            print(f"[DRY RUN] Would mark existing user {email} verified")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.mark_email_verified(email)
        print(f"Marked existing user {email} verified (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "verified"}

    if dry_run:
        print(f"[DRY RUN] Would create verified user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    pwd_hash, algo = hash_password(password)
    user = runtime.store.create_user(name, email, pwd_hash, algo)
    runtime.store.mark_email_verified(email)
    print(f"Created verified user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Create a pre-verified llmhub user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--name", default=os.environ.get("USER_NAME", "Administrator"))
    parser.add_argument(
        "--email",
        default=os.environ.get("USER_EMAIL"),
        help="User email (or set USER_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("USER_PASSWORD"),
        help="User password (or set USER_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or USER_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or USER_PASSWORD environment variable required")
        sys.exit(1)

    from llmhub.api.schemas import PASSWORD_PATTERN

    if len(args.password) < 8 or not PASSWORD_PATTERN.match(args.password):
        print("Error: Password must be at least 8 characters with upper, lower, digit")
        print("       and one special character (@$!%*?&#+)")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/llmhub-bootstrap"

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        create_verified_user(args.name, args.email, args.password, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

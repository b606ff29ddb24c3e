#!/usr/bin/env python3
"""Register a user from the command line and print its first token pair.

Usage:
    # Using environment variables:
    NEW_USER_EMAIL=ops@example.com NEW_USER_PASSWORD=changeme python scripts/create_user.py --name Ops

    # Or with command line args:
    python scripts/create_user.py --name Ops --email ops@example.com --password changeme

Environment Variables:
    NEW_USER_EMAIL: Email for the new user
    NEW_USER_PASSWORD: Password for the new user
    DATABASE_URL: PostgreSQL connection string (optional, uses the file-backed memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

PASSWORD_MIN_LENGTH = 6
PASSWORD_MAX_LENGTH = 128


def create_user(name: str, email: str, password: str, dry_run: bool = False) -> dict:
    """Register a user through the lifecycle manager.

    Returns:
        dict with user_id, email, status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from tokenwarden.service.errors import UserAlreadyExists
    from tokenwarden.service.runtime import get_runtime

    runtime = get_runtime()

    if dry_run:
        existing = runtime.store.get_user_by_email(email)
        status = "exists" if existing else "dry_run"
        print(f"[DRY RUN] Would create user: {email} ({status})")
        return {"user_id": existing.id if existing else None, "email": email, "status": status}

    try:
        result = runtime.lifecycle.register(name, email, password)
    except UserAlreadyExists:
        existing = runtime.store.get_user_by_email(email)
        print(f"User {email} already exists (id: {existing.id if existing else 'unknown'})")
        return {
            "user_id": existing.id if existing else None,
            "email": email,
            "status": "exists",
        }

    print(f"Created user: {result.user.email} (id: {result.user.id})")
    return {
        "user_id": result.user.id,
        "email": result.user.email,
        "status": "created",
        "access_token": result.access_token,
        "refresh_token": result.refresh_token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Register a TokenWarden user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--name", required=True, help="Display name")
    parser.add_argument(
        "--email",
        default=os.environ.get("NEW_USER_EMAIL"),
        help="User email (or set NEW_USER_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("NEW_USER_PASSWORD"),
        help="User password (or set NEW_USER_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or NEW_USER_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or NEW_USER_PASSWORD environment variable required")
        sys.exit(1)

    if not PASSWORD_MIN_LENGTH <= len(args.password) <= PASSWORD_MAX_LENGTH:
        print(
            f"Error: Password must be {PASSWORD_MIN_LENGTH} to {PASSWORD_MAX_LENGTH} characters"
        )
        sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using the file-backed memory store (set DATABASE_URL for Postgres)")

    try:
        result = create_user(args.name, args.email, args.password, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Access Token: {result['access_token'][:50]}...")


if __name__ == "__main__":
    main()

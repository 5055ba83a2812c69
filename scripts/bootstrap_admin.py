#!/usr/bin/env python3
"""Create the first portal administrator from the command line.

The administrator gets an inactive login and a set-password link by email,
exactly as with ``POST /v1/auth/create-admin``. Only one administrator can
ever be bootstrapped.

Usage:
    # Using environment variables:
    ADMIN_FIRST_NAME=Ada ADMIN_LAST_NAME=Lovelace ADMIN_EMAIL=admin@example.com \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --first-name Ada --last-name Lovelace --email admin@example.com

Environment Variables:
    ADMIN_FIRST_NAME, ADMIN_LAST_NAME, ADMIN_EMAIL: Administrator identity
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    SMTP_HOST, EMAIL_FROM_ADDRESS: Mail settings for the set-password link
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


async def bootstrap_admin(first_name: str, last_name: str, email: str, dry_run: bool = False) -> dict:
    """Run the one-time bootstrap.

    Returns:
        dict with individual_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from kidsmin.service.errors import AdminAlreadyExistsError
    from kidsmin.service.runtime import get_runtime

    runtime = get_runtime()

    if runtime.auth.admin_exists():
        print("An administrator already exists; nothing to do.")
        return {"individual_id": None, "email": email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create administrator {first_name} {last_name} <{email}>")
        return {"individual_id": None, "email": email, "status": "dry_run"}

    try:
        result = await runtime.auth.bootstrap_first_admin(first_name, last_name, email)
    except AdminAlreadyExistsError:
        print("Another process created the administrator first.")
        return {"individual_id": None, "email": email, "status": "exists"}

    return {
        "individual_id": result.individual_id,
        "email": email,
        "status": "created",
        "email_sent": result.email_sent,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the first KidsMin Portal administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--first-name",
        default=os.environ.get("ADMIN_FIRST_NAME"),
        help="Administrator first name (or set ADMIN_FIRST_NAME env var)",
    )
    parser.add_argument(
        "--last-name",
        default=os.environ.get("ADMIN_LAST_NAME"),
        help="Administrator last name (or set ADMIN_LAST_NAME env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Administrator email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    for flag, value in (
        ("--first-name", args.first_name),
        ("--last-name", args.last_name),
        ("--email", args.email),
    ):
        if not value:
            print(f"Error: {flag} or the matching ADMIN_* environment variable is required")
            sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/kidsmin-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from kidsmin.service.errors import ServiceError

    try:
        result = asyncio.run(
            bootstrap_admin(args.first_name, args.last_name, args.email, args.dry_run)
        )
    except ServiceError as e:
        print(f"Error: {e.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdministrator created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Individual ID: {result['individual_id']}")
        if not result["email_sent"]:
            print("  Warning: the set-password email could not be sent; use password reset.")
    elif result["status"] == "exists":
        sys.exit(1)


if __name__ == "__main__":
    main()

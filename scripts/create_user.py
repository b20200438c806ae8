#!/usr/bin/env python3
"""Create a user account, optionally printing a bearer token for it.

Usage:
    # Using environment variables:
    NEW_USER_EMAIL=alice@example.com NEW_USER_PASSWORD=secret123 python scripts/create_user.py --username alice

    # Or with command line args:
    python scripts/create_user.py --username alice --email alice@example.com --password secret123 --token

Environment Variables:
    NEW_USER_EMAIL: Email for the new user
    NEW_USER_PASSWORD: Password for the new user (at least 8 characters)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    JWT_SECRET: Signing key; must match the server's for --token output to be usable
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


async def create_user(
    username: str, email: str, password: str, *, issue_token: bool = False, dry_run: bool = False
) -> dict:
    """Sign up a user through the auth service.

    Returns:
        dict with user_id, email, status ('created', 'exists' or 'dry_run')
        and, when requested, a login token
    """
    # Import here so env defaults set in main() are seen by the config loader
    from taskman.service.runtime import get_runtime

    runtime = get_runtime()

    existing = runtime.store.get_user_by_email(email)
    if existing:
        print(f"User {email} already exists (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = await runtime.auth.signup(username, email, password)
    result = {"user_id": user.id, "email": email, "status": "created"}
    if issue_token:
        result["token"] = await runtime.auth.login(email, password)
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Create a task management user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--username", required=True, help="Display name")
    parser.add_argument(
        "--email",
        default=os.environ.get("NEW_USER_EMAIL"),
        help="Email (or set NEW_USER_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("NEW_USER_PASSWORD"),
        help="Password (or set NEW_USER_PASSWORD env var)",
    )
    parser.add_argument(
        "--token", action="store_true", help="Log the new user in and print the token"
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

    if not args.password or len(args.password) < 8:
        print("Error: a password of at least 8 characters is required")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/taskman-cli"

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(
            create_user(
                args.username,
                args.email,
                args.password,
                issue_token=args.token,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        if result.get("token"):
            print(f"  Token: {result['token']}")


if __name__ == "__main__":
    main()

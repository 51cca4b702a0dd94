#!/usr/bin/env python3
"""Activate or deactivate a user account.

Usage:
    python scripts/set_user_status.py --email someone@example.com --status inactive

    # Preview without writing:
    python scripts/set_user_status.py --email someone@example.com --status inactive --dry-run

Deactivating a user also signs out every session they hold; inactive users
cannot log in again until reactivated.

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    REDIS_URL: Redis connection string holding the session records
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def set_user_status(email: str, status: str, dry_run: bool = False) -> dict:
    """Change a user's status.

    Returns:
        dict with user_id, email, status, and sessions_removed
    """
    # Import here to avoid loading config before env vars are set
    from taskgate.service.runtime import get_runtime
    from taskgate.storage.models import UserStatus

    runtime = get_runtime()
    try:
        user = await asyncio.to_thread(runtime.store.get_user_by_email, email.strip().lower())
        if user is None:
            raise LookupError(f"no user with email {email}")

        result = {"user_id": user.id, "email": user.email, "status": status, "sessions_removed": 0}
        if user.status == status:
            print(f"User {user.email} is already {status} (id: {user.id})")
            result["result"] = "unchanged"
            return result

        if dry_run:
            print(f"[DRY RUN] Would set {user.email} to {status}")
            result["result"] = "dry_run"
            return result

        await asyncio.to_thread(runtime.store.set_user_status, user.id, status)
        if status == UserStatus.INACTIVE.value:
            result["sessions_removed"] = await runtime.sessions.delete_all_sessions(user.id)
        result["result"] = "updated"
        return result
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Activate or deactivate a Taskgate user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", required=True, help="Email of the user to update")
    parser.add_argument(
        "--status",
        required=True,
        choices=["active", "inactive"],
        help="New account status",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL"):
        print("Error: DATABASE_URL environment variable required")
        sys.exit(1)

    try:
        result = asyncio.run(set_user_status(args.email, args.status, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["result"] == "updated":
        print(f"\nUser {result['email']} is now {result['status']}.")
        if result["sessions_removed"]:
            print(f"  Sessions signed out: {result['sessions_removed']}")


if __name__ == "__main__":
    main()

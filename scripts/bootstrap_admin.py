#!/usr/bin/env python3
"""Make sure an administrator account exists.

Usage:
    # Using environment variables:
    BOOTSTRAP_ADMIN_USERNAME=admin BOOTSTRAP_ADMIN_PASSWORD='Plant-Console#2024' \
        PERSIST_STATE=true python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username admin --password 'Plant-Console#2024'

Environment Variables:
    BOOTSTRAP_ADMIN_USERNAME: Username for the administrator (default: admin)
    BOOTSTRAP_ADMIN_PASSWORD: Password for the administrator (must satisfy the password policy)
    STATE_DIR: Where the store snapshot and signing key live
    PERSIST_STATE: Set to true so the account survives this process
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


async def bootstrap_admin(username: str, password: str | None, dry_run: bool = False) -> dict:
    """Create or promote the administrator.

    Returns:
        dict with user_id, username, and status ('created', 'promoted', 'already_admin', 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from opsauth.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_user_by_username(username)

    if dry_run:
        action = "promote existing user" if existing else "create"
        print(f"[DRY RUN] Would {action} administrator: {username}")
        return {"user_id": existing.id if existing else None, "username": username, "status": "dry_run"}

    result = await runtime.auth.ensure_admin_user(username, password)
    if not result.success:
        raise RuntimeError(result.message + "".join(f"\n  - {v}" for v in result.violations))

    if result.message == "Administrator already exists":
        status = "already_admin"
    elif existing:
        status = "promoted"
    else:
        status = "created"
    return {"user_id": result.user.id, "username": result.user.username, "status": status}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator for opsauth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("BOOTSTRAP_ADMIN_USERNAME", "admin"),
        help="Administrator username (or set BOOTSTRAP_ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("BOOTSTRAP_ADMIN_PASSWORD"),
        help="Administrator password (or set BOOTSTRAP_ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not os.environ.get("PERSIST_STATE"):
        print("Note: PERSIST_STATE is not set; the account only lives in this process")

    try:
        result = asyncio.run(bootstrap_admin(args.username, args.password, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdministrator created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to administrator!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - an administrator already exists.")


if __name__ == "__main__":
    main()

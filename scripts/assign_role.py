#!/usr/bin/env python3
"""Assign a role to an existing user, looked up by phone number.

Usage:
    python scripts/assign_role.py --phone +15551234567 --role DRIVER
    ASSIGN_PHONE=+15551234567 ASSIGN_ROLE=ADMIN python scripts/assign_role.py

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    REDIS_URL: cache whose copy of the user record is invalidated
    JWT_SECRET: required by the service settings
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


async def assign_role(phone: str, role: str, dry_run: bool = False) -> dict:
    """Set the user's role and drop their cached record.

    Returns:
        dict with user_id, phone, role and status ('assigned', 'unchanged' or 'dry_run')
    """
    # Import here so settings are read after argument parsing
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.startup()
    try:
        user = await runtime.store.get_user_by_phone(phone)
        if user is None:
            raise LookupError(f"no user with phone {phone}")
        if user.role == role:
            return {"user_id": user.id, "phone": phone, "role": role, "status": "unchanged"}
        if dry_run:
            print(f"[DRY RUN] Would change {phone} from {user.role} to {role}")
            return {"user_id": user.id, "phone": phone, "role": role, "status": "dry_run"}
        updated = await runtime.auth.assign_role(user.id, role)
        return {"user_id": updated.id, "phone": phone, "role": updated.role, "status": "assigned"}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Assign a role to an authcore user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--phone",
        default=os.environ.get("ASSIGN_PHONE"),
        help="User phone in E.164 format (or set ASSIGN_PHONE)",
    )
    parser.add_argument(
        "--role",
        default=os.environ.get("ASSIGN_ROLE"),
        help="RIDER, DRIVER, FLEET_OWNER, ADMIN or SUPER_ADMIN (or set ASSIGN_ROLE)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.phone or not args.role:
        print("Error: --phone and --role are required")
        sys.exit(1)

    from authcore.service.roles import is_known_role

    role = args.role.upper()
    if not is_known_role(role):
        print(f"Error: unknown role {args.role}")
        sys.exit(1)

    try:
        result = asyncio.run(assign_role(args.phone, role, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "assigned":
        print(f"Assigned {result['role']} to {result['phone']} (id: {result['user_id']})")
    elif result["status"] == "unchanged":
        print(f"No changes needed - {result['phone']} already has role {result['role']}.")


if __name__ == "__main__":
    main()

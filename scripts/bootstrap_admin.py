#!/usr/bin/env python3
"""Provision an admin console account out of band.

Usage:
    ADMIN_EMAIL=ops@example.com ADMIN_PASSWORD='Str0ng!Passw0rd' python scripts/bootstrap_admin.py --role super_admin

    python scripts/bootstrap_admin.py --email ops@example.com --password 'Str0ng!Passw0rd' \
        --role admin --two-factor

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (same strength rules as users)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(
    email: str,
    password: str,
    role: str,
    *,
    first_name: str | None = None,
    last_name: str | None = None,
    two_factor: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create the admin account and return a summary of what was done."""
    # imported late so the env defaults below are in place before Settings loads
    from nestauth.service.result import Err
    from nestauth.service.runtime import get_runtime
    from nestauth.storage.models import AdminRole

    admin_role = AdminRole(role)
    runtime = get_runtime()
    try:
        existing = runtime.store.get_admin_by_email(email.strip().lower())
        if existing:
            return {"admin_id": existing.id, "email": existing.email, "status": "exists"}
        if dry_run:
            return {"admin_id": None, "email": email, "status": "dry_run", "role": admin_role.value}

        result = await runtime.admin_auth.provision_admin(
            email,
            password,
            admin_role,
            first_name=first_name,
            last_name=last_name,
            enable_two_factor=two_factor,
        )
        if isinstance(result, Err):
            return {"admin_id": None, "email": email, "status": "error", "error": result.error.message}
        provisioned = result.value
        return {
            "admin_id": provisioned.account.id,
            "email": provisioned.account.email,
            "status": "created",
            "role": provisioned.account.role.value,
            "two_factor_uri": provisioned.two_factor_uri,
        }
    finally:
        runtime.close()


def main():
    from nestauth.storage.models import AdminRole

    parser = argparse.ArgumentParser(
        description="Provision a NestAuth admin console account",
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
        "--role",
        default=AdminRole.ADMIN.value,
        choices=[r.value for r in AdminRole],
        help="Console role; permissions default to the role's standard grant",
    )
    parser.add_argument("--first-name")
    parser.add_argument("--last-name")
    parser.add_argument(
        "--two-factor",
        action="store_true",
        help="Enroll TOTP and print the otpauth:// URI once",
    )
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
        print("Note: Using the memory store under SHARED_FS_ROOT (set DATABASE_URL for Postgres)")
    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/nestauth-bootstrap")

    result = asyncio.run(
        bootstrap_admin(
            args.email,
            args.password,
            args.role,
            first_name=args.first_name,
            last_name=args.last_name,
            two_factor=args.two_factor,
            dry_run=args.dry_run,
        )
    )

    status = result["status"]
    if status == "created":
        print("\nAdmin account created.")
        print(f"  Email: {result['email']}")
        print(f"  Admin ID: {result['admin_id']}")
        print(f"  Role: {result['role']}")
        if result.get("two_factor_uri"):
            print(f"  TOTP enrollment URI (shown once): {result['two_factor_uri']}")
    elif status == "exists":
        print(f"\nNo changes: {result['email']} already exists (id: {result['admin_id']}).")
    elif status == "dry_run":
        print(f"[DRY RUN] Would create {result['role']} account for {result['email']}")
    else:
        print(f"Error: {result['error']}")
        sys.exit(1)


if __name__ == "__main__":
    main()

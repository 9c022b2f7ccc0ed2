#!/usr/bin/env python3
"""Create the first back-office administrator.

Usage:
    # Using environment variables:
    DEFAULT_ADMIN_EMAIL=09120000000 DEFAULT_ADMIN_PASSWORD=Secure1234 python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email 09120000000 --password Secure1234 --super

Environment Variables:
    DEFAULT_ADMIN_EMAIL: Login identifier (mobile number or email)
    DEFAULT_ADMIN_PASSWORD: Password (8+ characters, at least one letter and one digit)
    DEFAULT_ADMIN_FIRST_NAME / DEFAULT_ADMIN_LAST_NAME: Display name
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(
    identifier: str,
    password: str,
    first_name: str,
    last_name: str,
    *,
    role: str,
    dry_run: bool = False,
) -> dict:
    """Create an admin unless one with the identifier already exists.

    Returns:
        dict with admin_id, identifier and status ('created', 'exists' or 'dry_run')
    """
    # Settings are read from the environment prepared in main()
    from petconsult.service.runtime import Runtime

    runtime = Runtime()
    try:
        existing = runtime.store.get_admin_by_email(identifier)
        if existing:
            print(f"Admin {identifier} already exists (id: {existing.id}, role: {existing.role})")
            return {"admin_id": existing.id, "identifier": identifier, "status": "exists"}
        if dry_run:
            print(f"[DRY RUN] Would create {role} {identifier}")
            return {"admin_id": None, "identifier": identifier, "status": "dry_run"}
        admin = await runtime.admin.create_admin(
            identifier, password, first_name, last_name, role=role, created_by="bootstrap"
        )
        print(f"Created {admin.role} {identifier} (id: {admin.id})")
        return {"admin_id": admin.id, "identifier": identifier, "status": "created"}
    finally:
        await runtime.close()


def main():
    from petconsult.api.schemas import AdminCreateRequest

    parser = argparse.ArgumentParser(
        description="Bootstrap a back-office administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("DEFAULT_ADMIN_EMAIL"),
        help="Admin login identifier (or set DEFAULT_ADMIN_EMAIL)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("DEFAULT_ADMIN_PASSWORD"),
        help="Admin password (or set DEFAULT_ADMIN_PASSWORD)",
    )
    parser.add_argument(
        "--first-name", default=os.environ.get("DEFAULT_ADMIN_FIRST_NAME", "System")
    )
    parser.add_argument(
        "--last-name", default=os.environ.get("DEFAULT_ADMIN_LAST_NAME", "Administrator")
    )
    parser.add_argument(
        "--super",
        dest="role",
        action="store_const",
        const="SUPER_ADMIN",
        default="ADMIN",
        help="Create a SUPER_ADMIN that may create further admins",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or DEFAULT_ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or DEFAULT_ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    try:
        request = AdminCreateRequest(
            email=args.email,
            password=args.password,
            first_name=args.first_name,
            last_name=args.last_name,
            role=args.role,
        )
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    # The script only needs the store; signing secrets are throwaway when unset.
    os.environ.setdefault("JWT_SECRET", secrets.token_urlsafe(48))
    os.environ.setdefault("JWT_REFRESH_SECRET", secrets.token_urlsafe(48))
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(
                request.email,
                request.password,
                request.first_name,
                request.last_name,
                role=request.role,
                dry_run=args.dry_run,
            )
        )
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin created successfully!")
        print(f"  Identifier: {result['identifier']}")
        print(f"  Admin ID: {result['admin_id']}")
    elif result["status"] == "exists":
        print("\nNo changes needed - admin already exists.")


if __name__ == "__main__":
    main()

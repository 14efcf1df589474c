#!/usr/bin/env python3
"""Create or promote an administrator account.

Self-registration only grants the ``sales_rep`` and ``viewer`` roles, so the
first admin of a fresh Postgres database has to be created out of band.

Usage:
    ADMIN_EMAIL=owner@example.com ADMIN_PASSWORD=... DATABASE_URL=postgresql://... \\
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email owner@example.com --password ... --first-name Ada
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    return 8 <= len(password) <= 128


async def bootstrap_admin(
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    dry_run: bool = False,
) -> dict:
    """Create ``email`` as an admin, or promote the existing account.

    Returns a dict with ``user_id``, ``email`` and ``status`` (``created``,
    ``promoted``, ``already_admin`` or ``dry_run``).
    """
    # Imported late so the environment set up in main() is what config reads
    from stormcrm.service.runtime import get_runtime
    from stormcrm.storage.statements import FetchByUniqueField, InsertInto, Partition, UpdateById

    runtime = get_runtime()
    await runtime.startup()
    try:
        email = email.strip().lower()
        existing = (
            await runtime.db.query(FetchByUniqueField(Partition.USERS, "email", email))
        ).first

        if existing:
            if existing.get("role") == "admin":
                print(f"User {email} already exists as admin (id: {existing['id']})")
                return {"user_id": existing["id"], "email": email, "status": "already_admin"}
            if dry_run:
                print(f"[DRY RUN] Would promote existing user {email} to admin")
                return {"user_id": existing["id"], "email": email, "status": "dry_run"}
            await runtime.db.query(
                UpdateById(Partition.USERS, existing["id"], {"role": "admin", "is_active": True})
            )
            print(f"Promoted existing user {email} to admin (id: {existing['id']})")
            return {"user_id": existing["id"], "email": email, "status": "promoted"}

        if dry_run:
            print(f"[DRY RUN] Would create admin user: {email}")
            return {"user_id": None, "email": email, "status": "dry_run"}

        created = (
            await runtime.db.query(
                InsertInto(
                    Partition.USERS,
                    {
                        "email": email,
                        "password_hash": runtime.auth.hash_password(password),
                        "first_name": first_name,
                        "last_name": last_name,
                        "phone": None,
                        "role": "admin",
                        "is_active": True,
                        "last_login_at": None,
                    },
                )
            )
        ).first
        print(f"Created admin user: {email} (id: {created['id']})")
        return {"user_id": created["id"], "email": email, "status": "created"}
    finally:
        await runtime.shutdown()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for StormCRM",
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
    parser.add_argument("--first-name", default="Admin")
    parser.add_argument("--last-name", default="User")
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

    if not validate_password(args.password):
        print("Error: Password must be between 8 and 128 characters")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        print("Note: DATABASE_URL is not set; the account will only live in memory")
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SEED_DEMO_DATA", "false")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email, args.password, args.first_name, args.last_name, args.dry_run
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()

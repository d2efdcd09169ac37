#!/usr/bin/env python3
"""Seed a user into the persisted store for local testing.

Usage:
    # Using environment variables:
    SEED_USERNAME=alice SEED_PASSWORD=secret123 SEED_EMAIL=alice@example.com python scripts/bootstrap_user.py

    # Or with command line args:
    python scripts/bootstrap_user.py --username alice --password secret123 --email alice@example.com

Environment Variables:
    SEED_USERNAME / SEED_PASSWORD / SEED_EMAIL: account to create
    SHARED_FS_ROOT: directory holding state/store.json (default /tmp/xserver-bootstrap)
    MFA_SECRET_KEY or JWT_SECRET: key for two-factor secrets at rest; must match the server
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_user(
    username: str,
    password: str,
    email: str,
    *,
    phone: str | None = None,
    two_factor: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create a user unless one with the same username exists.

    Returns:
        dict with user_id, username, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from xserver.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_user_by_username(username)
    if existing:
        print(f"User {username} already exists (id: {existing.id})")
        return {"user_id": existing.id, "username": username, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create user: {username}")
        return {"user_id": None, "username": username, "status": "dry_run"}

    user = runtime.auth.register(username, password, email, phone)
    if two_factor:
        runtime.auth.set_two_factor(username, True)
    print(f"Created user: {username} (id: {user.id})")
    return {"user_id": user.id, "username": username, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Seed a user for X Server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--username", default=os.environ.get("SEED_USERNAME"))
    parser.add_argument("--password", default=os.environ.get("SEED_PASSWORD"))
    parser.add_argument("--email", default=os.environ.get("SEED_EMAIL"))
    parser.add_argument("--phone", default=os.environ.get("SEED_PHONE"))
    parser.add_argument(
        "--two-factor",
        action="store_true",
        help="Enable two-factor authentication for the new user",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    for name in ("username", "password", "email"):
        if not getattr(args, name):
            print(f"Error: --{name} or SEED_{name.upper()} environment variable required")
            sys.exit(1)

    os.environ["PERSIST_STATE"] = "true"
    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/xserver-bootstrap")
    if not os.environ.get("JWT_SECRET") and not os.environ.get("MFA_SECRET_KEY"):
        print("Warning: neither MFA_SECRET_KEY nor JWT_SECRET is set; two-factor secrets")
        print("         written now will not be readable by the server")

    try:
        result = bootstrap_user(
            args.username,
            args.password,
            args.email,
            phone=args.phone,
            two_factor=args.two_factor,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")


if __name__ == "__main__":
    main()

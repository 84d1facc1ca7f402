#!/usr/bin/env python3
"""Create, promote or reset an admin account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=ChangeMe123 python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password ChangeMe123 --reset-password

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def password_acceptable(password: str, min_length: int) -> bool:
    if len(password) < min_length:
        return False
    return any(c.isalpha() for c in password) and any(c.isdigit() for c in password)


def bootstrap_admin(
    runtime,
    email: str,
    password: str,
    *,
    first_name: str = "",
    last_name: str = "",
    reset_password: bool = False,
    dry_run: bool = False,
) -> dict:
    """Ensure ``email`` is an active admin; returns ``{"user_id", "email", "status"}``."""
    from trafficlearn.storage.models import Role, UserStatus

    store = runtime.store
    existing = store.get_user_by_email(email)

    if existing is None:
        if dry_run:
            return {"user_id": None, "email": email, "status": "dry_run"}
        user = store.create_user(
            email,
            runtime.auth.hash_password(password),
            Role.ADMIN,
            first_name=first_name,
            last_name=last_name,
        )
        return {"user_id": user.id, "email": user.email, "status": "created"}

    changes = []
    if existing.role is not Role.ADMIN:
        changes.append("promoted")
    if not existing.is_active:
        changes.append("activated")
    if reset_password:
        changes.append("password_reset")
    if not changes:
        return {"user_id": existing.id, "email": existing.email, "status": "already_admin"}
    if dry_run:
        return {"user_id": existing.id, "email": existing.email, "status": "dry_run"}

    if "promoted" in changes:
        store.update_user_role(existing.id, Role.ADMIN)
    if "activated" in changes:
        store.set_user_status(existing.id, UserStatus.ACTIVE)
    if reset_password:
        store.update_password_hash(existing.id, runtime.auth.hash_password(password))
    return {"user_id": existing.id, "email": existing.email, "status": ",".join(changes)}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for the Traffic Learning Platform",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--first-name", default="")
    parser.add_argument("--last-name", default="")
    parser.add_argument(
        "--reset-password",
        action="store_true",
        help="Overwrite the password of an existing account",
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
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from trafficlearn.service.runtime import get_runtime

    runtime = get_runtime()
    if not password_acceptable(args.password, runtime.settings.password_min_length):
        print(
            f"Error: Password must be at least {runtime.settings.password_min_length} "
            "characters and mix letters with digits"
        )
        sys.exit(1)

    try:
        result = bootstrap_admin(
            runtime,
            args.email,
            args.password,
            first_name=args.first_name,
            last_name=args.last_name,
            reset_password=args.reset_password,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        runtime.close()

    print(f"{result['status']}: {result['email']} (id: {result['user_id']})")


if __name__ == "__main__":
    main()

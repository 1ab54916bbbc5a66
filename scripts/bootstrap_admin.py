#!/usr/bin/env python3
"""Create or promote the first super_admin account.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure#Pass123' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure#Pass123'

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password (must satisfy the password policy)
    ADMIN_COMPANY_ID: Optional company the account belongs to
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
import uuid
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

ADMIN_ROLE = "super_admin"


def bootstrap_admin(
    runtime, email: str, password: str, *, company_id: str | None = None, dry_run: bool = False
) -> dict:
    """Create the account, or promote an existing one to super_admin.

    Returns:
        dict with user_id, email and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    from erpcore.service.auth import normalize_email
    from erpcore.service.permissions import resolve_permissions
    from erpcore.storage.models import Subject, utcnow

    email = normalize_email(email)
    permissions = resolve_permissions(ADMIN_ROLE)
    existing = runtime.store.get_subject_by_email(email)

    if existing:
        if existing.role == ADMIN_ROLE:
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.update_subject_role(existing.id, ADMIN_ROLE, permissions)
        runtime.audit.record(
            "USER_STATUS_CHANGED", subject_id=existing.id, role=ADMIN_ROLE, source="bootstrap"
        )
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    subject = runtime.store.create_subject(
        Subject(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=runtime.passwords.hash(password),
            first_name="System",
            last_name="Administrator",
            role=ADMIN_ROLE,
            company_id=company_id,
            permissions=permissions,
            email_verified_at=utcnow(),
        )
    )
    runtime.audit.record("REGISTER", subject_id=subject.id, role=ADMIN_ROLE, source="bootstrap")
    return {"user_id": subject.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a super_admin account",
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
        "--company-id",
        default=os.environ.get("ADMIN_COMPANY_ID"),
        help="Company id for the account (or set ADMIN_COMPANY_ID env var)",
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

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    # Only the credential store is touched; sessions and rate limits are irrelevant here
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from erpcore.service.passwords import validate_password
    from erpcore.service.runtime import get_runtime

    result = validate_password(args.password)
    if not result.is_valid:
        print("Error: password rejected:")
        for message in result.errors:
            print(f"  - {message}")
        sys.exit(1)

    try:
        outcome = bootstrap_admin(
            get_runtime(),
            args.email,
            args.password,
            company_id=args.company_id,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    status = outcome["status"]
    if status == "created":
        print("\nAdmin account created successfully!")
        print(f"  Email: {outcome['email']}")
        print(f"  User ID: {outcome['user_id']}")
    elif status == "promoted":
        print(f"\nExisting account {outcome['email']} promoted to {ADMIN_ROLE}.")
    elif status == "already_admin":
        print("\nNo changes needed - account is already a super_admin.")
    else:
        print(f"\n[DRY RUN] No changes made for {outcome['email']}.")


if __name__ == "__main__":
    main()

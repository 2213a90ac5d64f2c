#!/usr/bin/env python3
"""Bootstrap a pre-verified account for testing and initial setup.

Usage:
    # Using environment variables:
    BOOTSTRAP_EMAIL=ops@example.com BOOTSTRAP_PASSWORD='long-enough-password' python scripts/bootstrap_user.py

    # Or with command line args:
    python scripts/bootstrap_user.py --email ops@example.com --password 'long-enough-password' --user-type organizer

Environment Variables:
    BOOTSTRAP_EMAIL: Email for the account
    BOOTSTRAP_PASSWORD: Password for the account (12-128 characters)
    BOOTSTRAP_DISPLAY_NAME: Display name (defaults to the email's local part)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
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
    email: str,
    password: str,
    display_name: str,
    user_type: str = "organizer",
    dry_run: bool = False,
) -> dict:
    """Create a verified account, or verify an existing one.

    Returns:
        dict with user_id, email, and status ('created', 'verified',
        'already_verified' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from festauth.service.errors import AuthError
    from festauth.service.runtime import get_runtime
    from festauth.service.validation import (
        normalize_unicode,
        validate_display_name,
        validate_email,
        validate_password,
        validate_user_type,
    )
    from festauth.storage.models import User

    try:
        normalized = validate_email(email)
        validate_password(password)
        name = validate_display_name(display_name)
        kind = validate_user_type(user_type)
    except AuthError as exc:
        raise SystemExit(f"Error: {exc.detail.get('field')}: {exc.message}")

    runtime = get_runtime()
    actor = runtime.settings.system_actor_id
    now = runtime.clock.now()

    existing_user = runtime.store.get_user_by_email(normalized)
    if existing_user:
        if existing_user.email_verified:
            print(f"User {email} already exists and is verified (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "already_verified"}
        if dry_run:
            print(f"[DRY RUN] Would mark existing user {email} as verified")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}
        runtime.store.mark_email_verified(existing_user.id, actor_id=actor, now=now)
        print(f"Marked existing user {email} as verified (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "verified"}

    if dry_run:
        print(f"[DRY RUN] Would create {kind.value} user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = User.new(
        normalize_unicode(email.strip()),
        name,
        runtime.hasher.hash(password),
        user_type=kind,
        email_verified=True,
        email_normalized=normalized,
        actor_id=actor,
        now=now,
    )
    user = runtime.store.create_user(user)
    print(f"Created {kind.value} user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a verified FestConnect account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("BOOTSTRAP_EMAIL"),
        help="Account email (or set BOOTSTRAP_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("BOOTSTRAP_PASSWORD"),
        help="Account password (or set BOOTSTRAP_PASSWORD env var)",
    )
    parser.add_argument(
        "--display-name",
        default=os.environ.get("BOOTSTRAP_DISPLAY_NAME"),
        help="Display name (defaults to the email's local part)",
    )
    parser.add_argument(
        "--user-type",
        choices=["attendee", "organizer"],
        default="organizer",
        help="Account type (default: organizer)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or BOOTSTRAP_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or BOOTSTRAP_PASSWORD environment variable required")
        sys.exit(1)

    display_name = args.display_name or args.email.split("@", 1)[0]

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/festauth-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_user(
            args.email, args.password, display_name, args.user_type, args.dry_run
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAccount created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "verified":
        print("\nExisting account marked as verified.")
    elif result["status"] == "already_verified":
        print("\nNo changes needed - account is already verified.")


if __name__ == "__main__":
    main()

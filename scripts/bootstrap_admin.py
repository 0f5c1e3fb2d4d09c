#!/usr/bin/env python3
"""Promote a signed-in user to admin, or encrypt an OIDC client secret.

Users are created by their first login through the identity provider, so the
account must exist before it can be promoted.

Usage:
    # Promote by email (state is read from and written to DATA_DIR):
    DATA_DIR=/var/lib/chatgate python scripts/bootstrap_admin.py --email admin@example.com

    # Produce a value for OIDC_CLIENT_SECRET_ENCRYPTED:
    ENCRYPTION_KEY=... python scripts/bootstrap_admin.py --encrypt-secret "client-secret"

Environment Variables:
    ADMIN_EMAIL: Email of the user to promote
    DATA_DIR: Directory holding the persisted user store
    ENCRYPTION_KEY: Key material for secrets (falls back to SESSION_SECRET)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def promote_admin(email: str, dry_run: bool = False) -> dict:
    """Give an existing user the admin role.

    Returns:
        dict with user_id, email, and status ('promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from chatgate.config import get_settings
    from chatgate.storage.memory import MemoryStore

    settings = get_settings()
    store = MemoryStore(data_dir=settings.data_dir)

    user = store.get_user_by_email(email)
    if user is None:
        raise LookupError(f"no user with email {email}; sign in once before promoting")

    if user.role == "admin":
        print(f"User {email} already exists as admin (id: {user.id})")
        return {"user_id": user.id, "email": email, "status": "already_admin"}

    if dry_run:
        print(f"[DRY RUN] Would promote existing user {email} to admin")
        return {"user_id": user.id, "email": email, "status": "dry_run"}

    store.update_user_role(user.id, "admin")
    print(f"Promoted existing user {email} to admin (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "promoted"}


def encrypt_secret(plaintext: str) -> str:
    from chatgate.config import get_settings
    from chatgate.service.crypto import SecretBox

    settings = get_settings()
    return SecretBox(settings.encryption_key or settings.session_secret).encrypt(plaintext)


def main():
    parser = argparse.ArgumentParser(
        description="Admin bootstrap helpers for chatgate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Email of the user to promote (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--encrypt-secret",
        metavar="SECRET",
        help="Print the encrypted form of SECRET for OIDC_CLIENT_SECRET_ENCRYPTED",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if args.encrypt_secret:
        print(encrypt_secret(args.encrypt_secret))
        return

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    try:
        result = promote_admin(args.email, args.dry_run)
    except (LookupError, RuntimeError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""Create or promote the first Manager account.

Managers can only be appointed by other Managers, so a fresh deployment needs
one created out of band. The account is created active; the operator vouches
for the address instead of an emailed code.

Usage:
    MANAGER_EMAIL=ops@example.com MANAGER_PASSWORD='long passphrase' python scripts/bootstrap_manager.py
    python scripts/bootstrap_manager.py --email ops@example.com --password 'long passphrase'

Environment Variables:
    MANAGER_EMAIL: Email for the manager account
    MANAGER_PASSWORD: Password (at least PASSWORD_MIN_LENGTH characters)
    DATABASE_URL: PostgreSQL connection string (memory store if unset)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_manager(runtime, email: str, password: str, dry_run: bool = False) -> dict:
    """Create, activate or promote ``email`` to an active Manager.

    An existing account is given ``password`` before it is promoted.

    Returns a dict with ``account_id``, ``email`` and ``status`` (one of
    created, promoted, already_manager, dry_run).
    """
    from identcore.service.errors import ConflictError
    from identcore.storage.errors import ConstraintViolation
    from identcore.storage.models import AccountStatus, Role

    auth = runtime.auth
    normalized = auth.validate_email(email)
    auth.validate_password(password)

    existing = auth.accounts.find_by_email(normalized)
    if existing:
        if existing.status == AccountStatus.BLOCKED:
            raise ConflictError("account is blocked; unblock it before promoting")
        if existing.role == Role.MANAGER and existing.status == AccountStatus.ACTIVE:
            if not auth.passwords.verify_password(password, existing.password_hash):
                raise ConflictError("password does not match the existing manager account")
            return {"account_id": existing.id, "email": normalized, "status": "already_manager"}
        if dry_run:
            return {"account_id": existing.id, "email": normalized, "status": "dry_run"}
        auth.accounts.set_password(existing.id, auth.passwords.hash_password(password))
        if existing.status == AccountStatus.PENDING_VERIFICATION:
            auth.accounts.activate(existing.id)
        auth.accounts.set_role(existing.id, Role.MANAGER)
        return {"account_id": existing.id, "email": normalized, "status": "promoted"}

    if dry_run:
        return {"account_id": None, "email": normalized, "status": "dry_run"}
    try:
        account = runtime.store.create_account(
            normalized,
            auth.passwords.hash_password(password),
            role=Role.MANAGER,
            status=AccountStatus.ACTIVE,
        )
    except ConstraintViolation as exc:
        raise ConflictError("email already registered") from exc
    return {"account_id": account.id, "email": normalized, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a Manager account for identcore",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("MANAGER_EMAIL"),
        help="Manager email (or set MANAGER_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("MANAGER_PASSWORD"),
        help="Manager password (or set MANAGER_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or MANAGER_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or MANAGER_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/identcore-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from identcore.logging import set_correlation_id
    from identcore.service.errors import ServiceError
    from identcore.service.runtime import get_runtime
    from identcore.storage.errors import StoreUnavailable

    set_correlation_id()
    try:
        result = bootstrap_manager(get_runtime(), args.email, args.password, args.dry_run)
    except (ServiceError, StoreUnavailable) as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    messages = {
        "created": "Manager account created",
        "promoted": "Existing account promoted to manager",
        "already_manager": "No changes needed; account is already an active manager",
        "dry_run": "[DRY RUN] Would create or promote the manager account",
    }
    print(f"{messages[result['status']]}: {result['email']} (id: {result['account_id']})")


if __name__ == "__main__":
    main()

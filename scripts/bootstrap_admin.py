#!/usr/bin/env python3
"""Grant the admin role to an account, creating the account if needed.

    python scripts/bootstrap_admin.py --email ops@example.com --password 'Str0ng-Passw0rd'

ADMIN_EMAIL and ADMIN_PASSWORD are read when the flags are omitted. Without
DATABASE_URL the in-memory store is used, which is only useful for a dry run.
The password is ignored for accounts that already exist.
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys
from pathlib import Path
from typing import Optional

# Make the sessionward package importable when run from a checkout
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

CREATED = "created"
PROMOTED = "promoted"
UNCHANGED = "already_admin"
DRY_RUN = "dry_run"


def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Make ``email`` an admin and report what happened.

    The result holds ``user_id``, ``email`` and ``status``, one of
    created, promoted, already_admin or dry_run.
    """
    # Deferred so main() can prepare the environment before settings load
    from sessionward.service.runtime import get_runtime

    runtime = get_runtime()
    role = runtime.settings.admin_role
    user = runtime.store.get_user_by_email(email)

    if user is not None and user.has_role(role):
        status = UNCHANGED
    elif dry_run:
        status = DRY_RUN
    elif user is not None:
        user.roles.add(role)
        user = runtime.store.update_user(user)
        status = PROMOTED
    else:
        user = runtime.accounts.create_user(email, password, roles={role})
        status = CREATED

    return {
        "user_id": user.id if user is not None else None,
        "email": user.email if user is not None else email,
        "status": status,
    }


_SUMMARY = {
    CREATED: "Created {email} with the admin role (id: {user_id})",
    PROMOTED: "Granted the admin role to {email} (id: {user_id})",
    UNCHANGED: "{email} is already an admin; nothing to do",
    DRY_RUN: "Dry run: {email} would be made an admin",
}


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description=__doc__.splitlines()[0],
        epilog="\n".join(__doc__.splitlines()[1:]),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument(
        "--dry-run", action="store_true", help="report the outcome without writing anything"
    )
    args = parser.parse_args(argv)

    missing = [flag for flag, value in (("--email", args.email), ("--password", args.password)) if not value]
    if missing:
        print(f"Missing {', '.join(missing)} (or ADMIN_EMAIL / ADMIN_PASSWORD)", file=sys.stderr)
        return 1

    # Token signing is irrelevant here, but settings refuse to load without a secret
    os.environ.setdefault("SESSION_SECRET", secrets.token_urlsafe(48))
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("DATABASE_URL is not set; changes go to a throwaway in-memory store", file=sys.stderr)

    from sessionward.service.errors import ServiceError
    from sessionward.storage.errors import ConstraintViolation

    try:
        result = bootstrap_admin(args.email, args.password, args.dry_run)
    except ServiceError as exc:
        details = "; ".join(exc.detail.get("errors", [])) or exc.message
        print(f"Refused: {details}", file=sys.stderr)
        return 1
    except ConstraintViolation as exc:
        print(f"Refused: {exc.message}", file=sys.stderr)
        return 1

    print(_SUMMARY[result["status"]].format(**result))
    return 0


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""
Seed the initial coordinator account for a fresh database installation.

Security behavior:
- If HEMS_INITIAL_COORDINATOR_PASSWORD is set, that value is used and must
  pass the password policy.
- Otherwise, a cryptographically random password is generated and printed once.
- The account is always created with a forced password change.
"""

import os
import secrets
import string
import sys
from pathlib import Path

# Add parent directory to path (where hems/ is located)
script_dir = Path(__file__).parent
project_root = script_dir.parent
sys.path.insert(0, str(project_root))

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from hems.core.exceptions import DatabaseError
from hems.core.models import AuthState, User, UserRole
from hems.core.password_policy import validate
from hems.core.security import hash_password
from hems.core.services.database import get_db_service

DEFAULT_USERNAME = "coordinator@hu.edu.et"


def _generate_password(length: int = 20) -> str:
    alphabet = string.ascii_letters + string.digits + "!@#$%^&*()-_=+"
    while True:
        candidate = "".join(secrets.choice(alphabet) for _ in range(length))
        if validate(candidate).ok:
            return candidate


def _resolve_password() -> tuple[str, bool]:
    configured = os.getenv("HEMS_INITIAL_COORDINATOR_PASSWORD", "").strip()
    if configured:
        outcome = validate(configured)
        if not outcome.ok:
            raise ValueError(
                "HEMS_INITIAL_COORDINATOR_PASSWORD is too weak: " + "; ".join(outcome.messages)
            )
        return configured, True
    return _generate_password(), False


def seed_coordinator() -> int:
    """Ensure the coordinator account exists."""
    print("Seeding database with initial coordinator...")

    username = (
        os.getenv("HEMS_INITIAL_COORDINATOR_USERNAME", DEFAULT_USERNAME).strip()
        or DEFAULT_USERNAME
    )
    try:
        password, password_from_env = _resolve_password()
    except ValueError as e:
        print(f"[FAIL] {e}")
        return 1

    db_service = get_db_service()
    try:
        with db_service.get_session() as session:
            existing = session.execute(
                select(User).where(User.username == username)
            ).scalar_one_or_none()
            if existing is not None:
                print(f"Coordinator {username} already exists, skipping.")
                return 0

        db_service.create_user(
            User(
                username=username,
                password_hash=hash_password(password),
                role=UserRole.COORDINATOR,
                auth_state=AuthState.UNVERIFIED,
                must_change_password=True,
            )
        )
    except (SQLAlchemyError, DatabaseError) as e:
        print(f"[FAIL] Error creating coordinator: {e}")
        return 1

    print("[OK] Initial coordinator created successfully!")
    print(f"  Username: {username}")
    if password_from_env:
        print("  Password: (from HEMS_INITIAL_COORDINATOR_PASSWORD)")
    else:
        print(f"  Generated Password: {password}")
    print("  Action Required: Sign in and change the password immediately.")
    return 0


if __name__ == "__main__":
    raise SystemExit(seed_coordinator())

"""
Per-identity failed-login counter with time-boxed lockout.

Every method works inside the caller's database session; the caller commits.
Counter changes are single SQL statements so concurrent failures for one
identity cannot under-count.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..clock import Clock, utcnow
from ..models import User
from .settings_config_service import get_settings_service


@dataclass
class LockStatus:
    locked: bool
    ends_at: Optional[datetime] = None
    remaining_seconds: int = 0
    failed_attempts: int = 0
    newly_locked: bool = False


class LockoutTracker:
    """Normal -> Locked -> Normal state machine per identity"""

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        lockout_minutes: Optional[int] = None,
        clock: Clock = utcnow,
    ):
        security = get_settings_service().get_security_defaults()
        self.max_attempts = max_attempts or security["max_login_attempts"]
        self.lockout_minutes = (
            lockout_minutes or security["account_lockout_duration_minutes"]
        )
        self.clock = clock

    def _status(self, session: Session, user_id: int, newly_locked: bool = False) -> LockStatus:
        row = session.execute(
            select(
                User.is_locked, User.lockout_ends_at, User.failed_login_attempts
            ).where(User.id == user_id)
        ).one()
        now = self.clock()
        locked = bool(row.is_locked and row.lockout_ends_at and row.lockout_ends_at > now)
        remaining = int((row.lockout_ends_at - now).total_seconds()) if locked else 0
        return LockStatus(
            locked=locked,
            ends_at=row.lockout_ends_at if locked else None,
            remaining_seconds=max(0, remaining),
            failed_attempts=row.failed_login_attempts,
            newly_locked=newly_locked,
        )

    def check(self, session: Session, user_id: int) -> LockStatus:
        """Current lock state; an expired lock is cleared along with the counter."""
        now = self.clock()
        session.execute(
            update(User)
            .where(
                User.id == user_id,
                User.is_locked.is_(True),
                User.lockout_ends_at <= now,
            )
            .values(is_locked=False, lockout_ends_at=None, failed_login_attempts=0)
            .execution_options(synchronize_session="fetch")
        )
        return self._status(session, user_id)

    def register_failure(self, session: Session, user_id: int) -> LockStatus:
        """Count one failure and lock the identity once the threshold is reached."""
        now = self.clock()
        session.execute(
            update(User)
            .where(User.id == user_id)
            .values(
                failed_login_attempts=User.failed_login_attempts + 1,
                last_failed_login_at=now,
            )
            .execution_options(synchronize_session="fetch")
        )
        result = session.execute(
            update(User)
            .where(
                User.id == user_id,
                User.is_locked.is_(False),
                User.failed_login_attempts >= self.max_attempts,
            )
            .values(
                is_locked=True,
                lockout_ends_at=now + timedelta(minutes=self.lockout_minutes),
            )
            .execution_options(synchronize_session="fetch")
        )
        return self._status(session, user_id, newly_locked=result.rowcount == 1)

    def reset(self, session: Session, user_id: int) -> None:
        """Back to Normal after a successful authentication."""
        session.execute(
            update(User)
            .where(User.id == user_id)
            .values(is_locked=False, lockout_ends_at=None, failed_login_attempts=0)
            .execution_options(synchronize_session="fetch")
        )

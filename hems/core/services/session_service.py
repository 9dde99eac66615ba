"""
Login session service for HEMS

A login session is the server-side half of an access token: the token's
``sid`` claim must name an active, unexpired row here.
"""

import uuid
from datetime import timedelta
from typing import Optional

from sqlalchemy import select, update

from ..clock import Clock, utcnow
from ..models import LoginSession
from .database import get_db_service
from .settings_config_service import get_settings_service


class SessionService:
    """Issues, validates and revokes login sessions"""

    def __init__(self, session_hours: Optional[int] = None, clock: Clock = utcnow):
        self.session_hours = (
            session_hours or get_settings_service().get_exam_defaults()["login_session_hours"]
        )
        self.clock = clock

    @property
    def db_service(self):
        return get_db_service()

    def new_session(
        self,
        user_id: int,
        phase: int,
        exam_session_id: Optional[int] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginSession:
        """Unsaved login session; the caller adds it to its transaction"""
        now = self.clock()
        return LoginSession(
            user_id=user_id,
            session_token=uuid.uuid4().hex,
            login_phase=phase,
            exam_session_id=exam_session_id,
            ip_address=ip_address,
            user_agent=user_agent,
            is_active=True,
            created_at=now,
            expires_at=now + timedelta(hours=self.session_hours),
        )

    def create_session(
        self,
        user_id: int,
        phase: int,
        exam_session_id: Optional[int] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        """Persist a new login session and return its token"""
        with self.db_service.get_session() as session:
            login_session = self.new_session(
                user_id, phase, exam_session_id, ip_address, user_agent
            )
            session.add(login_session)
            session.commit()
            return login_session.session_token

    def validate_session(self, token: str) -> Optional[LoginSession]:
        """Return the session if it is active and unexpired"""
        if not token:
            return None
        with self.db_service.get_session() as session:
            return session.execute(
                select(LoginSession).where(
                    LoginSession.session_token == token,
                    LoginSession.is_active.is_(True),
                    LoginSession.expires_at > self.clock(),
                )
            ).scalar_one_or_none()

    def invalidate_session(self, token: str) -> bool:
        now = self.clock()
        with self.db_service.get_session() as session:
            result = session.execute(
                update(LoginSession)
                .where(
                    LoginSession.session_token == token,
                    LoginSession.is_active.is_(True),
                )
                .values(is_active=False, logout_at=now, ended_at=now)
            )
            session.commit()
            return result.rowcount == 1

    def invalidate_all_sessions(self, user_id: int) -> int:
        """Close every active session of a user; returns how many were closed"""
        now = self.clock()
        with self.db_service.get_session() as session:
            result = session.execute(
                update(LoginSession)
                .where(LoginSession.user_id == user_id, LoginSession.is_active.is_(True))
                .values(is_active=False, ended_at=now)
            )
            session.commit()
            return result.rowcount

    def extend_session(self, token: str) -> bool:
        """Push the expiry of a live session out by a full session length"""
        now = self.clock()
        with self.db_service.get_session() as session:
            result = session.execute(
                update(LoginSession)
                .where(
                    LoginSession.session_token == token,
                    LoginSession.is_active.is_(True),
                    LoginSession.expires_at > now,
                )
                .values(expires_at=now + timedelta(hours=self.session_hours))
            )
            session.commit()
            return result.rowcount == 1

    def cleanup_expired_sessions(self) -> int:
        now = self.clock()
        with self.db_service.get_session() as session:
            result = session.execute(
                update(LoginSession)
                .where(LoginSession.is_active.is_(True), LoginSession.expires_at <= now)
                .values(is_active=False, ended_at=now)
            )
            session.commit()
            return result.rowcount


# Global session service instance
_session_service: Optional[SessionService] = None


def get_session_service() -> SessionService:
    """Get the global login session service instance"""
    global _session_service
    if _session_service is None:
        _session_service = SessionService()
    return _session_service

"""
Exam session registry for HEMS

Exam sessions are the coordinator-issued passwords students present in
Phase 2. At most one session is active per exam: issuing a new one
deactivates the others in the same transaction, and a partial unique index
backs this up in the store.
"""

import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..clock import Clock, utcnow
from ..models import AuditEventType, Exam, ExamSession
from ..results import ErrorKind, ExamOperationResult
from ..security import hash_password, verify_password
from .audit_service import AuditService
from .boundary import storage_boundary
from .database import get_db_service
from .logging import get_logging_service
from .settings_config_service import get_settings_service

SESSION_PASSWORD_PATTERN = re.compile(r"^[A-Za-z0-9]{6,50}$")


def _system_error():
    return ExamOperationResult.failure(ErrorKind.SYSTEM_ERROR)


class ExamSessionRegistry:
    """Issues and expires exam-day session passwords"""

    def __init__(self, clock: Clock = utcnow):
        settings = get_settings_service()
        self.validity_hours = settings.get_exam_defaults()["session_validity_hours"]
        self.allow_legacy_plaintext = settings.get_security_defaults()[
            "allow_legacy_plaintext_credentials"
        ]
        self.clock = clock
        self.audit = AuditService(clock)
        self.logging_service = get_logging_service()

    @property
    def db_service(self):
        return get_db_service()

    @storage_boundary(_system_error)
    def issue_session(
        self, exam_id: int, plaintext_password: str, issued_by: Optional[int] = None
    ) -> ExamOperationResult:
        """Activate a new session for a published exam, deactivating any other"""
        if not plaintext_password or not SESSION_PASSWORD_PATTERN.match(plaintext_password):
            return ExamOperationResult.failure(
                ErrorKind.INVALID_FORMAT,
                "Session password must be 6-50 alphanumeric characters.",
            )

        password_hash = hash_password(plaintext_password)
        # A concurrent issue for the same exam trips the partial unique index;
        # the retry deactivates the winner's row and takes over.
        for attempt in range(2):
            with self.db_service.get_session() as session:
                exam = session.get(Exam, exam_id)
                if exam is None:
                    return ExamOperationResult.failure(ErrorKind.EXAM_NOT_FOUND)
                if not exam.is_published:
                    return ExamOperationResult.failure(ErrorKind.EXAM_NOT_PUBLISHED)

                now = self.clock()
                deactivated = session.execute(
                    update(ExamSession)
                    .where(ExamSession.exam_id == exam_id, ExamSession.is_active.is_(True))
                    .values(is_active=False, deactivated_at=now)
                ).rowcount
                exam_session = ExamSession(
                    exam_id=exam_id,
                    session_password_hash=password_hash,
                    is_active=True,
                    created_at=now,
                    expires_at=now + timedelta(hours=self.validity_hours),
                )
                session.add(exam_session)
                try:
                    session.flush()
                except IntegrityError:
                    session.rollback()
                    if attempt == 0:
                        continue
                    raise

                session.add(
                    self.audit.build_entry(
                        AuditEventType.EXAM_SESSION_ISSUED,
                        f"Exam session {exam_session.id} issued for exam {exam_id}",
                        user_id=issued_by,
                        exam_id=exam_id,
                        additional_data={"deactivated_sessions": deactivated},
                    )
                )
                session.commit()

                self.logging_service.log_exam_event(
                    "session_issued",
                    user_id=issued_by,
                    exam_id=exam_id,
                    exam_session_id=exam_session.id,
                    deactivated_sessions=deactivated,
                )
                return ExamOperationResult.success(
                    "Exam session issued",
                    data={
                        "session_id": exam_session.id,
                        "exam_id": exam_id,
                        "expires_at": exam_session.expires_at.isoformat(),
                    },
                )

    def deactivate(self, session_id: int, deactivated_by: Optional[int] = None) -> bool:
        """Deactivate a session. Returns True only if it was active; repeat calls are no-ops."""
        with self.db_service.get_session() as session:
            now = self.clock()
            changed = session.execute(
                update(ExamSession)
                .where(ExamSession.id == session_id, ExamSession.is_active.is_(True))
                .values(is_active=False, deactivated_at=now)
            ).rowcount
            if changed:
                exam_id = session.execute(
                    select(ExamSession.exam_id).where(ExamSession.id == session_id)
                ).scalar_one()
                session.add(
                    self.audit.build_entry(
                        AuditEventType.EXAM_SESSION_DEACTIVATED,
                        f"Exam session {session_id} deactivated",
                        user_id=deactivated_by,
                        exam_id=exam_id,
                    )
                )
            session.commit()
            return bool(changed)

    def active_sessions(self, session: Session, now: Optional[datetime] = None) -> Sequence[ExamSession]:
        """Active, unexpired sessions within the caller's transaction"""
        now = now or self.clock()
        return (
            session.execute(
                select(ExamSession)
                .where(ExamSession.is_active.is_(True), ExamSession.expires_at > now)
                .order_by(ExamSession.id)
            )
            .scalars()
            .all()
        )

    def match_password(
        self, sessions: Sequence[ExamSession], plaintext_password: str
    ) -> Optional[ExamSession]:
        """First session whose secret matches, or None"""
        for candidate in sessions:
            if verify_password(
                plaintext_password,
                candidate.session_password_hash,
                allow_plaintext_fallback=self.allow_legacy_plaintext,
            ):
                return candidate
        return None

    def list_active_sessions(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        with self.db_service.get_session() as session:
            return [
                {
                    "id": s.id,
                    "exam_id": s.exam_id,
                    "created_at": s.created_at.isoformat(),
                    "expires_at": s.expires_at.isoformat(),
                }
                for s in self.active_sessions(session, now)
            ]

    def has_active_session(self, session: Session, now: Optional[datetime] = None) -> bool:
        now = now or self.clock()
        found = session.execute(
            select(ExamSession.id)
            .where(
                ExamSession.is_active.is_(True),
                ExamSession.expires_at > now,
            )
            .limit(1)
        ).first()
        return found is not None

    def is_exam_time_now(self) -> bool:
        """True while any active, unexpired exam session exists"""
        with self.db_service.get_session() as session:
            return self.has_active_session(session)

    def expire_stale_sessions(self) -> int:
        """Deactivate sessions past their expiry; returns how many changed"""
        now = self.clock()
        with self.db_service.get_session() as session:
            changed = session.execute(
                update(ExamSession)
                .where(ExamSession.is_active.is_(True), ExamSession.expires_at <= now)
                .values(is_active=False, deactivated_at=now)
            ).rowcount
            session.commit()
            return changed


# Global registry instance
_exam_session_registry: Optional[ExamSessionRegistry] = None


def get_exam_session_registry() -> ExamSessionRegistry:
    """Get the global exam session registry instance"""
    global _exam_session_registry
    if _exam_session_registry is None:
        _exam_session_registry = ExamSessionRegistry()
    return _exam_session_registry

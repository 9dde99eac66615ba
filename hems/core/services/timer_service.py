"""
Exam timer service for HEMS

Remaining time is always derived from the attempt start time, the exam
duration and the server clock. Client-held timestamps are authenticated with
an HMAC so a tampered value is detected on the way back in.
"""

import hashlib
import hmac
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..clock import Clock, utcnow
from ..exceptions import AttemptNotFoundError
from ..models import AuditEventType, AuditSeverity, Exam, StudentExam
from ..results import SecureTimestamp, TimeRemaining
from ..security_utils import get_or_create_timer_key
from .audit_service import AuditService
from .database import get_db_service
from .logging import get_logging_service
from .settings_config_service import get_settings_service


def remaining_seconds(attempt: StudentExam, exam: Exam, now: datetime) -> int:
    """Whole seconds left on an attempt, never negative"""
    if attempt.is_submitted:
        return 0
    deadline = attempt.started_at + timedelta(minutes=exam.duration_minutes)
    return max(0, int((deadline - now).total_seconds()))


class TimerService:
    """Remaining-time computation and timing tamper detection"""

    def __init__(self, clock: Clock = utcnow, timer_key: Optional[str] = None):
        self.clock = clock
        self.grace_minutes = get_settings_service().get_exam_defaults()[
            "timer_grace_minutes"
        ]
        self._key = (timer_key or get_or_create_timer_key()).encode("utf-8")
        self.audit = AuditService(clock)
        self.logging_service = get_logging_service()

    @property
    def db_service(self):
        return get_db_service()

    def _load(self, session: Session, attempt_id: int):
        attempt = session.get(StudentExam, attempt_id)
        if attempt is None:
            raise AttemptNotFoundError(f"Attempt {attempt_id} not found")
        return attempt, attempt.exam

    def compute_hash(self, server_time: datetime, attempt_id: int) -> str:
        message = f"{server_time.isoformat()}|{attempt_id}".encode("utf-8")
        return hmac.new(self._key, message, hashlib.sha256).hexdigest()

    def get_remaining_time(self, attempt_id: int) -> TimeRemaining:
        with self.db_service.get_session() as session:
            attempt, exam = self._load(session, attempt_id)
            return TimeRemaining(remaining_seconds(attempt, exam, self.clock()))

    def is_time_expired(self, attempt_id: int) -> bool:
        return self.get_remaining_time(attempt_id).is_expired

    def get_secure_timestamp(self, attempt_id: int) -> SecureTimestamp:
        """Server-signed time snapshot for the client to echo back"""
        with self.db_service.get_session() as session:
            attempt, exam = self._load(session, attempt_id)
            now = self.clock()
            return SecureTimestamp(
                attempt_id=attempt_id,
                server_time=now,
                start_time=attempt.started_at,
                end_time=attempt.started_at + timedelta(minutes=exam.duration_minutes),
                remaining_seconds=remaining_seconds(attempt, exam, now),
                hash=self.compute_hash(now, attempt_id),
            )

    def validate_timestamp(
        self,
        attempt_id: int,
        server_time: datetime,
        timestamp_hash: str,
        user_id: Optional[int] = None,
        ip_address: Optional[str] = None,
    ) -> bool:
        """Check a client-returned timestamp; a mismatch is recorded as suspicious.

        Only ``server_time`` and the attempt id are authenticated. Any remaining
        time the client claims is ignored.
        """
        expected = self.compute_hash(server_time, attempt_id)
        if hmac.compare_digest(expected, timestamp_hash or ""):
            return True

        self.logging_service.log_security_event(
            "timestamp_tampered",
            user_id=user_id,
            ip_address=ip_address,
            attempt_id=attempt_id,
        )
        self.audit.log_event(
            AuditEventType.SUSPICIOUS_TIMING,
            f"Timestamp hash mismatch for attempt {attempt_id}",
            AuditSeverity.WARNING,
            user_id=user_id,
            student_exam_id=attempt_id,
            ip_address=ip_address,
            additional_data={"server_time": server_time.isoformat()},
        )
        return False

    def check_integrity(self, session: Session, attempt: StudentExam, exam: Exam) -> bool:
        """Elapsed time within duration plus grace.

        A violation flags the attempt for forced submission on its next access.
        Runs inside the caller's transaction; the caller commits.
        """
        elapsed = self.clock() - attempt.started_at
        allowed = timedelta(minutes=exam.duration_minutes + self.grace_minutes)
        if attempt.is_submitted or elapsed <= allowed:
            return True

        flagged = session.execute(
            update(StudentExam)
            .where(StudentExam.id == attempt.id, StudentExam.force_submit.is_(False))
            .values(force_submit=True)
            .execution_options(synchronize_session="fetch")
        ).rowcount
        if flagged:
            self.logging_service.log_security_event(
                "time_integrity_violation",
                attempt_id=attempt.id,
                elapsed_seconds=int(elapsed.total_seconds()),
            )
            session.add(
                self.audit.build_entry(
                    AuditEventType.SUSPICIOUS_TIMING,
                    f"Attempt {attempt.id} exceeded duration plus grace",
                    AuditSeverity.WARNING,
                    student_exam_id=attempt.id,
                    exam_id=exam.id,
                    student_id=attempt.student_id,
                    additional_data={"elapsed_seconds": int(elapsed.total_seconds())},
                )
            )
        return False

    def validate_exam_time_integrity(self, attempt_id: int) -> bool:
        with self.db_service.get_session() as session:
            attempt, exam = self._load(session, attempt_id)
            ok = self.check_integrity(session, attempt, exam)
            session.commit()
            return ok

    def detect_suspicious_timing_activity(self, attempt_id: int) -> bool:
        return not self.validate_exam_time_integrity(attempt_id)


# Global timer service instance
_timer_service: Optional[TimerService] = None


def get_timer_service() -> TimerService:
    """Get the global timer service instance"""
    global _timer_service
    if _timer_service is None:
        _timer_service = TimerService()
    return _timer_service

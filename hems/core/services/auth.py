"""
Authentication service for HEMS

Two-phase student login (identity verification, then exam-day admission),
coordinator login, password changes and access tokens.
"""

import hmac
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from email_validator import EmailNotValidError, validate_email
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..clock import Clock, utcnow
from ..credentials import derive_phase1_password
from ..models import (
    AuditEventType,
    AuditSeverity,
    AuthState,
    ExamSession,
    FailedLoginAttempt,
    PasswordHistory,
    Student,
    StudentExam,
    SuccessfulLoginAttempt,
    User,
    UserRole,
)
from ..password_policy import validate as validate_password_policy
from ..results import (
    AuthenticationResult,
    ErrorKind,
    PasswordChangeResult,
    WeakPasswordReason,
)
from ..security import MalformedHashError, check_password_hash, hash_password, verify_password
from ..security_utils import get_or_create_jwt_secret
from .audit_service import AuditService
from .boundary import storage_boundary
from .database import get_db_service
from .exam_session_service import ExamSessionRegistry
from .lockout import LockoutTracker
from .logging import get_logging_service
from .session_service import SessionService
from .settings_config_service import get_settings_service

# Failures that count toward the lockout threshold
_COUNTED_FAILURES = {ErrorKind.INCORRECT_PASSWORD, ErrorKind.INCORRECT_EXAM_PASSWORD}


@dataclass
class AuthContext:
    """Identity behind a validated access token"""

    user: User
    session_token: str
    phase: int
    exam_session_id: Optional[int] = None
    exam_id: Optional[int] = None


def _auth_system_error():
    return AuthenticationResult.failure(ErrorKind.SYSTEM_ERROR)


def _password_system_error():
    return PasswordChangeResult.failure(ErrorKind.SYSTEM_ERROR)


class AuthService:
    """Authentication and authorization service"""

    def __init__(self, clock: Clock = utcnow):
        settings = get_settings_service()
        security = settings.get_security_defaults()

        self.clock = clock
        self.jwt_secret = get_or_create_jwt_secret()
        self.jwt_algorithm = "HS256"
        self.token_expiry_minutes = security["token_expiry_minutes"]
        self.password_history_count = security["password_history_count"]
        self.allow_legacy_plaintext = security["allow_legacy_plaintext_credentials"]
        self.year_suffix = settings.get_exam_defaults()["phase1_year_suffix"]

        self.lockout = LockoutTracker(clock=clock)
        self.sessions = SessionService(clock=clock)
        self.registry = ExamSessionRegistry(clock=clock)
        self.audit = AuditService(clock)
        self.logging_service = get_logging_service()

    @property
    def db_service(self):
        return get_db_service()

    # ------------------------------------------------------------------
    # Shared success / failure paths
    # ------------------------------------------------------------------

    def _fail(
        self,
        session: Session,
        kind: ErrorKind,
        identifier: str,
        phase: int,
        user: Optional[User] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthenticationResult:
        """Record a rejected login, count it toward lockout if applicable, commit."""
        now = self.clock()
        session.add(
            FailedLoginAttempt.record_attempt(
                identifier=identifier,
                login_phase=phase,
                error_type=kind.value,
                attempted_at=now,
                user_id=user.id if user else None,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )

        extra = {}
        if user is not None and kind in _COUNTED_FAILURES:
            status = self.lockout.register_failure(session, user.id)
            extra["failed_attempt_count"] = status.failed_attempts
            if status.newly_locked:
                session.add(
                    self.audit.build_entry(
                        AuditEventType.ACCOUNT_LOCKED,
                        f"Account {user.id} locked after {status.failed_attempts} failed logins",
                        AuditSeverity.WARNING,
                        user_id=user.id,
                        ip_address=ip_address,
                        additional_data={"lockout_ends_at": status.ends_at.isoformat()},
                    )
                )
                self.logging_service.log_security_event(
                    "account_locked", user_id=user.id, ip_address=ip_address
                )
        session.commit()

        self.logging_service.log_auth_event(
            f"phase{phase}_login",
            user_id=user.id if user else None,
            success=False,
            error_kind=kind.value,
            ip_address=ip_address,
        )
        return AuthenticationResult.failure(
            kind, phase=phase, user_id=user.id if user else None, **extra
        )

    def _locked(
        self,
        session: Session,
        identifier: str,
        phase: int,
        user: User,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> Optional[AuthenticationResult]:
        status = self.lockout.check(session, user.id)
        if not status.locked:
            return None
        result = self._fail(
            session, ErrorKind.ACCOUNT_LOCKED, identifier, phase, user, ip_address, user_agent
        )
        result.lockout_ends_at = status.ends_at
        result.lockout_remaining_seconds = status.remaining_seconds
        result.failed_attempt_count = status.failed_attempts
        return result

    def _succeed(
        self,
        session: Session,
        user: User,
        identifier: str,
        phase: int,
        ip_address: Optional[str],
        user_agent: Optional[str],
        exam_session_id: Optional[int] = None,
        message: str = "Login successful",
        **fields,
    ) -> AuthenticationResult:
        now = self.clock()
        self.lockout.reset(session, user.id)
        login_session = self.sessions.new_session(
            user.id, phase, exam_session_id, ip_address, user_agent
        )
        session.add(login_session)
        session.add(
            SuccessfulLoginAttempt.record_attempt(
                identifier=identifier,
                login_phase=phase,
                user_id=user.id,
                login_at=now,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )
        session.add(
            self.audit.build_entry(
                AuditEventType.USER_LOGIN,
                f"Phase {phase} login",
                user_id=user.id,
                student_id=user.student.id if user.student else None,
                ip_address=ip_address,
                additional_data={"phase": phase, "exam_session_id": exam_session_id},
            )
        )
        session.commit()

        self.logging_service.log_auth_event(
            f"phase{phase}_login", user_id=user.id, success=True, ip_address=ip_address
        )
        token = self._generate_jwt_token(user, login_session.session_token, phase, exam_session_id)
        return AuthenticationResult(
            ok=True,
            message=message,
            user_id=user.id,
            display_name=user.full_name,
            role=user.role.value,
            phase=phase,
            session_token=login_session.session_token,
            access_token=token,
            exam_session_id=exam_session_id,
            **fields,
        )

    # ------------------------------------------------------------------
    # Phase 1
    # ------------------------------------------------------------------

    @storage_boundary(_auth_system_error)
    def validate_phase1(
        self,
        login_name: str,
        password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthenticationResult:
        """Identity verification by login name and Phase 1 password"""
        login_name = (login_name or "").strip()
        if not login_name or not password:
            return AuthenticationResult.failure(ErrorKind.INVALID_FORMAT, phase=1)
        try:
            validate_email(login_name, check_deliverability=False)
        except EmailNotValidError:
            return AuthenticationResult.failure(ErrorKind.INVALID_FORMAT, phase=1)

        with self.db_service.get_session() as session:
            user = session.execute(
                select(User).where(User.username == login_name)
            ).scalar_one_or_none()
            if user is None:
                return self._fail(
                    session, ErrorKind.USER_NOT_FOUND, login_name, 1, None, ip_address, user_agent
                )

            locked = self._locked(session, login_name, 1, user, ip_address, user_agent)
            if locked is not None:
                return locked

            if user.role == UserRole.STUDENT:
                return self._phase1_student(session, user, login_name, password, ip_address, user_agent)

            if not verify_password(
                password,
                user.password_hash,
                allow_plaintext_fallback=self.allow_legacy_plaintext,
            ):
                return self._fail(
                    session, ErrorKind.INCORRECT_PASSWORD, login_name, 1, user, ip_address, user_agent
                )
            if user.auth_state == AuthState.UNVERIFIED:
                user.auth_state = AuthState.PHASE1
            return self._succeed(
                session,
                user,
                login_name,
                1,
                ip_address,
                user_agent,
                requires_password_change=user.must_change_password,
            )

    def _phase1_student(
        self,
        session: Session,
        user: User,
        login_name: str,
        password: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> AuthenticationResult:
        student = user.student
        if student is None:
            return self._fail(
                session, ErrorKind.STUDENT_RECORD_NOT_FOUND, login_name, 1, user, ip_address, user_agent
            )

        if user.phase1_completed:
            if not self.registry.has_active_session(session, self.clock()):
                return self._fail(
                    session,
                    ErrorKind.PHASE1_ALREADY_COMPLETED,
                    login_name,
                    1,
                    user,
                    ip_address,
                    user_agent,
                )
            re_entry = True
        else:
            re_entry = False

        expected = derive_phase1_password(student.id_number, self.year_suffix)
        if not hmac.compare_digest(expected.encode("utf-8"), password.encode("utf-8")):
            return self._fail(
                session, ErrorKind.INCORRECT_PASSWORD, login_name, 1, user, ip_address, user_agent
            )

        if not re_entry:
            user.auth_state = AuthState.PHASE1
        return self._succeed(
            session,
            user,
            login_name,
            1,
            ip_address,
            user_agent,
            message=(
                "Identity already verified. Continue to Phase 2 exam login."
                if re_entry
                else "Identity verified. Continue to Phase 2 exam login."
            ),
            continue_to_phase2=True,
        )

    # ------------------------------------------------------------------
    # Phase 2
    # ------------------------------------------------------------------

    @storage_boundary(_auth_system_error)
    def validate_phase2(
        self,
        id_number: str,
        password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthenticationResult:
        """Exam-day admission by student id number and exam session password"""
        id_number = (id_number or "").strip()
        if not id_number or not password:
            return AuthenticationResult.failure(ErrorKind.INVALID_FORMAT, phase=2)

        with self.db_service.get_session() as session:
            student = session.execute(
                select(Student).where(Student.id_number == id_number)
            ).scalar_one_or_none()
            if student is None:
                return self._fail(
                    session, ErrorKind.USER_NOT_FOUND, id_number, 2, None, ip_address, user_agent
                )
            user = student.user

            locked = self._locked(session, id_number, 2, user, ip_address, user_agent)
            if locked is not None:
                return locked

            if not user.phase1_completed:
                return self._fail(
                    session, ErrorKind.PHASE1_NOT_COMPLETED, id_number, 2, user, ip_address, user_agent
                )

            candidates = self.registry.active_sessions(session, self.clock())
            if not candidates:
                return self._fail(
                    session, ErrorKind.EXAM_SESSION_NOT_FOUND, id_number, 2, user, ip_address, user_agent
                )

            matched = self.registry.match_password(candidates, password)
            if matched is None:
                return self._fail(
                    session,
                    ErrorKind.INCORRECT_EXAM_PASSWORD,
                    id_number,
                    2,
                    user,
                    ip_address,
                    user_agent,
                )

            submitted = session.execute(
                select(StudentExam.id).where(
                    StudentExam.student_id == student.id,
                    StudentExam.exam_id == matched.exam_id,
                    StudentExam.is_submitted.is_(True),
                )
            ).first()
            if submitted is not None:
                return self._fail(
                    session, ErrorKind.ALREADY_SUBMITTED, id_number, 2, user, ip_address, user_agent
                )

            now = self.clock()
            user.auth_state = AuthState.PHASE2
            user.current_exam_session_id = matched.id
            user.last_phase2_login = now
            return self._succeed(
                session,
                user,
                id_number,
                2,
                ip_address,
                user_agent,
                exam_session_id=matched.id,
                message="Exam login successful",
                exam_id=matched.exam_id,
                requires_password_change=user.must_change_password,
            )

    # ------------------------------------------------------------------
    # Password change
    # ------------------------------------------------------------------

    def _is_reused(self, user: User, new_password: str) -> bool:
        recent = [h.password_hash for h in user.password_history][-self.password_history_count:]
        candidates = [user.password_hash] + recent if user.password_hash else recent
        for stored in candidates:
            try:
                if check_password_hash(new_password, stored):
                    return True
            except MalformedHashError:
                continue
        return False

    @storage_boundary(_password_system_error)
    def change_password(
        self, user_id: int, new_password: str, confirm_password: str
    ) -> PasswordChangeResult:
        if new_password != confirm_password:
            return PasswordChangeResult.failure(ErrorKind.CONFIRMATION_MISMATCH)

        outcome = validate_password_policy(new_password)
        if not outcome.ok:
            return PasswordChangeResult.failure(
                ErrorKind.WEAK_PASSWORD,
                weak_reason=outcome.reason,
                violations=outcome.messages,
            )

        with self.db_service.get_session() as session:
            user = session.get(User, user_id)
            if user is None:
                return PasswordChangeResult.failure(ErrorKind.USER_NOT_FOUND)
            if self._is_reused(user, new_password):
                return PasswordChangeResult.failure(
                    ErrorKind.WEAK_PASSWORD,
                    weak_reason=WeakPasswordReason.PASSWORD_REUSE,
                    message=f"Password was used recently. Choose one not among your last {self.password_history_count}.",
                )

            new_hash = hash_password(new_password)
            user.password_hash = new_hash
            user.must_change_password = False
            session.add(
                PasswordHistory(user_id=user.id, password_hash=new_hash, created_at=self.clock())
            )
            session.add(
                self.audit.build_entry(
                    AuditEventType.PASSWORD_CHANGED, "Password changed", user_id=user.id
                )
            )
            session.commit()

        self.logging_service.log_auth_event("password_changed", user_id=user_id, success=True)
        return PasswordChangeResult.success()

    # ------------------------------------------------------------------
    # Sessions and tokens
    # ------------------------------------------------------------------

    def invalidate_all_sessions(self, user_id: int) -> int:
        return self.sessions.invalidate_all_sessions(user_id)

    def logout(self, user_id: int, ip_address: Optional[str] = None) -> int:
        """End every login session of the user"""
        closed = self.sessions.invalidate_all_sessions(user_id)
        self.audit.log_event(
            AuditEventType.USER_LOGOUT,
            "User logged out",
            user_id=user_id,
            ip_address=ip_address,
            additional_data={"sessions_closed": closed},
        )
        self.logging_service.log_auth_event("logout", user_id=user_id, success=True)
        return closed

    def _generate_jwt_token(
        self,
        user: User,
        session_token: str,
        phase: int,
        exam_session_id: Optional[int] = None,
    ) -> str:
        """Generate JWT token bound to a login session"""
        payload = {
            "sid": session_token,
            "user_id": user.id,
            "role": user.role.value,
            "phase": phase,
            "exam_session_id": exam_session_id,
            "exp": datetime.now(timezone.utc) + timedelta(minutes=self.token_expiry_minutes),
            "iat": datetime.now(timezone.utc),
        }
        return jwt.encode(payload, self.jwt_secret, algorithm=self.jwt_algorithm)

    def validate_token(self, token: str) -> Optional[AuthContext]:
        """Validate JWT token and its login session"""
        try:
            # Require expiration to prevent indefinite token validity if a token
            # is ever minted without an exp claim.
            payload = jwt.decode(
                token,
                self.jwt_secret,
                algorithms=[self.jwt_algorithm],
                options={"require": ["exp"]},
            )
        except jwt.InvalidTokenError:
            return None

        session_token = payload.get("sid")
        user_id = payload.get("user_id")
        if not session_token or not user_id:
            return None

        login_session = self.sessions.validate_session(session_token)
        if login_session is None or login_session.user_id != user_id:
            return None

        with self.db_service.get_session() as session:
            user = session.get(User, user_id)
            if user is None:
                return None
            # Loaded for callers that read the profile after the session closes
            _ = user.student
            exam_id = None
            if login_session.exam_session_id is not None:
                exam_id = session.execute(
                    select(ExamSession.exam_id).where(
                        ExamSession.id == login_session.exam_session_id
                    )
                ).scalar()
            return AuthContext(
                user=user,
                session_token=session_token,
                phase=login_session.login_phase,
                exam_session_id=login_session.exam_session_id,
                exam_id=exam_id,
            )


# Global auth service instance
_auth_service: Optional[AuthService] = None


def get_auth_service() -> AuthService:
    """Get the global auth service instance"""
    global _auth_service
    if _auth_service is None:
        _auth_service = AuthService()
    return _auth_service

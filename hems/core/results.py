"""
Typed results returned by the authentication, exam and grading services.

Business-rule failures never raise. Callers branch on ``error_kind``, never on
message text.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


class ErrorKind(enum.Enum):
    """Closed failure taxonomy"""

    INVALID_FORMAT = "invalid_format"
    USER_NOT_FOUND = "user_not_found"
    INCORRECT_PASSWORD = "incorrect_password"
    ACCOUNT_LOCKED = "account_locked"
    PHASE1_ALREADY_COMPLETED = "phase1_already_completed"
    PHASE1_NOT_COMPLETED = "phase1_not_completed"
    STUDENT_RECORD_NOT_FOUND = "student_record_not_found"
    EXAM_SESSION_NOT_FOUND = "exam_session_not_found"
    INCORRECT_EXAM_PASSWORD = "incorrect_exam_password"
    CONFIRMATION_MISMATCH = "confirmation_mismatch"
    WEAK_PASSWORD = "weak_password"
    SESSION_TIMEOUT = "session_timeout"
    ALREADY_SUBMITTED = "already_submitted"
    SYSTEM_ERROR = "system_error"
    EXAM_NOT_FOUND = "exam_not_found"
    EXAM_NOT_PUBLISHED = "exam_not_published"
    ATTEMPT_NOT_FOUND = "attempt_not_found"
    ATTEMPT_NOT_SUBMITTED = "attempt_not_submitted"
    INVALID_QUESTION = "invalid_question"
    UNAUTHORIZED_ACCESS = "unauthorized_access"


class WeakPasswordReason(enum.Enum):
    """Sub-reason carried with ``ErrorKind.WEAK_PASSWORD``"""

    TOO_SHORT = "too_short"
    TOO_LONG = "too_long"
    MISSING_CHARACTER_CLASS = "missing_character_class"
    WEAK_PATTERN = "weak_pattern"
    PASSWORD_REUSE = "password_reuse"


# Shown to end users. USER_NOT_FOUND and INCORRECT_PASSWORD must stay identical.
PUBLIC_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.INVALID_FORMAT: "The submitted value is not in a valid format.",
    ErrorKind.USER_NOT_FOUND: "Invalid credentials.",
    ErrorKind.INCORRECT_PASSWORD: "Invalid credentials.",
    ErrorKind.ACCOUNT_LOCKED: "Account is temporarily locked due to repeated failed logins.",
    ErrorKind.PHASE1_ALREADY_COMPLETED: "Identity verification already completed. Please login on the exam date.",
    ErrorKind.PHASE1_NOT_COMPLETED: "Please complete Phase 1 identity verification first.",
    ErrorKind.STUDENT_RECORD_NOT_FOUND: "Student record not found. Please contact your coordinator.",
    ErrorKind.EXAM_SESSION_NOT_FOUND: "No active exam session found. Please contact your coordinator.",
    ErrorKind.INCORRECT_EXAM_PASSWORD: "Invalid session password.",
    ErrorKind.CONFIRMATION_MISMATCH: "Password and confirmation do not match.",
    ErrorKind.WEAK_PASSWORD: "Password does not meet the security requirements.",
    ErrorKind.SESSION_TIMEOUT: "Exam time has expired. Your answers have been submitted.",
    ErrorKind.ALREADY_SUBMITTED: "This exam has already been submitted.",
    ErrorKind.SYSTEM_ERROR: "A system error occurred. Please try again.",
    ErrorKind.EXAM_NOT_FOUND: "Exam not found.",
    ErrorKind.EXAM_NOT_PUBLISHED: "This exam is not available.",
    ErrorKind.ATTEMPT_NOT_FOUND: "Exam attempt not found.",
    ErrorKind.ATTEMPT_NOT_SUBMITTED: "This exam attempt has not been submitted yet.",
    ErrorKind.INVALID_QUESTION: "The question or choice does not belong to this exam.",
    ErrorKind.UNAUTHORIZED_ACCESS: "You do not have access to this resource.",
}


def public_kind(kind: ErrorKind) -> ErrorKind:
    """Kind safe to expose to a client; hides whether an account exists."""
    if kind == ErrorKind.USER_NOT_FOUND:
        return ErrorKind.INCORRECT_PASSWORD
    return kind


def public_message(kind: ErrorKind) -> str:
    return PUBLIC_MESSAGES[kind]


@dataclass
class AuthenticationResult:
    """Outcome of a Phase 1 or Phase 2 login"""

    ok: bool
    error_kind: Optional[ErrorKind] = None
    message: str = ""
    user_id: Optional[int] = None
    display_name: Optional[str] = None
    role: Optional[str] = None
    phase: int = 0
    session_token: Optional[str] = None
    access_token: Optional[str] = None
    exam_session_id: Optional[int] = None
    exam_id: Optional[int] = None
    requires_password_change: bool = False
    continue_to_phase2: bool = False
    lockout_ends_at: Optional[datetime] = None
    lockout_remaining_seconds: Optional[int] = None
    failed_attempt_count: int = 0

    @classmethod
    def failure(cls, kind: ErrorKind, message: Optional[str] = None, **kwargs):
        return cls(ok=False, error_kind=kind, message=message or public_message(kind), **kwargs)


@dataclass
class PasswordChangeResult:
    """Outcome of a password change"""

    ok: bool
    error_kind: Optional[ErrorKind] = None
    message: str = ""
    weak_reason: Optional[WeakPasswordReason] = None
    violations: List[str] = field(default_factory=list)

    @classmethod
    def success(cls):
        return cls(ok=True, message="Password changed successfully")

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        weak_reason: Optional[WeakPasswordReason] = None,
        violations: Optional[List[str]] = None,
        message: Optional[str] = None,
    ):
        return cls(
            ok=False,
            error_kind=kind,
            message=message or public_message(kind),
            weak_reason=weak_reason,
            violations=violations or [],
        )


@dataclass
class GradingResult:
    """Score breakdown of one attempt"""

    attempt_id: int
    total: int
    correct: int
    incorrect: int
    unanswered: int
    percentage: float
    grade: str
    graded_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "total": self.total,
            "correct": self.correct,
            "incorrect": self.incorrect,
            "unanswered": self.unanswered,
            "percentage": self.percentage,
            "grade": self.grade,
            "graded_at": self.graded_at.isoformat() if self.graded_at else None,
        }


def format_duration(total_seconds: int) -> str:
    """``HH:MM:SS`` when at least an hour remains, else ``MM:SS``."""
    total_seconds = max(0, int(total_seconds))
    hours, rest = divmod(total_seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}"
    return f"{minutes:02d}:{seconds:02d}"


@dataclass
class TimeRemaining:
    total_seconds: int

    @property
    def is_expired(self) -> bool:
        return self.total_seconds <= 0

    @property
    def formatted(self) -> str:
        return format_duration(self.total_seconds)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_seconds": self.total_seconds,
            "formatted": self.formatted,
            "is_expired": self.is_expired,
        }


@dataclass
class SecureTimestamp:
    """Server time and remaining duration, authenticated by a keyed hash."""

    attempt_id: int
    server_time: datetime
    start_time: datetime
    end_time: datetime
    remaining_seconds: int
    hash: str

    @property
    def is_expired(self) -> bool:
        return self.remaining_seconds <= 0

    @property
    def total_seconds_remaining(self) -> int:
        return max(0, self.remaining_seconds)

    @property
    def formatted_remaining_time(self) -> str:
        if self.remaining_seconds <= 0:
            return "00:00:00"
        hours, rest = divmod(self.remaining_seconds, 3600)
        minutes, seconds = divmod(rest, 60)
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "server_time": self.server_time.isoformat(),
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "remaining_seconds": self.total_seconds_remaining,
            "formatted_remaining_time": self.formatted_remaining_time,
            "is_expired": self.is_expired,
            "hash": self.hash,
        }


@dataclass
class ExamOperationResult:
    """Outcome of an exam-taking or exam-maintenance call"""

    ok: bool
    error_kind: Optional[ErrorKind] = None
    message: str = ""
    attempt_id: Optional[int] = None
    result: Optional[GradingResult] = None
    auto_submitted: bool = False
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, message: str = "", **kwargs):
        return cls(ok=True, message=message, **kwargs)

    @classmethod
    def failure(cls, kind: ErrorKind, message: Optional[str] = None, **kwargs):
        return cls(ok=False, error_kind=kind, message=message or public_message(kind), **kwargs)

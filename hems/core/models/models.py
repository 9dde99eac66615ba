"""
SQLAlchemy models for HEMS

Identity, student profile, exam definition, exam-day sessions, attempts and
answers, plus the append-only login and audit trails.
"""

import enum
from typing import Optional, Dict, Any
from sqlalchemy import (
    JSON,
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    ForeignKey,
    Text,
    Float,
    Enum as SQLEnum,
    Index,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import relationship

from ..clock import utcnow

Base = declarative_base()


class UserRole(enum.Enum):
    """Account roles"""

    STUDENT = "student"
    COORDINATOR = "coordinator"


class AuthState(enum.Enum):
    """Two-phase authentication state of an identity.

    ``PHASE2`` is always paired with ``User.current_exam_session_id``.
    """

    UNVERIFIED = "unverified"
    PHASE1 = "phase1"
    PHASE2 = "phase2"
    SUBMITTED = "submitted"


class AuditSeverity(enum.Enum):
    """Audit log severities"""

    INFO = "Info"
    WARNING = "Warning"
    CRITICAL = "Critical"


class AuditEventType:
    """Audit event type names stored in ``AuditLog.event_type``"""

    EXAM_STARTED = "EXAM_STARTED"
    EXAM_SUBMITTED = "EXAM_SUBMITTED"
    EXAM_AUTO_SUBMITTED = "EXAM_AUTO_SUBMITTED"
    ANSWER_SAVED = "ANSWER_SAVED"
    QUESTION_FLAGGED = "QUESTION_FLAGGED"
    QUESTION_UNFLAGGED = "QUESTION_UNFLAGGED"
    EXAM_PUBLISHED = "EXAM_PUBLISHED"
    EXAM_UNPUBLISHED = "EXAM_UNPUBLISHED"
    EXAM_SESSION_ISSUED = "EXAM_SESSION_ISSUED"
    EXAM_SESSION_DEACTIVATED = "EXAM_SESSION_DEACTIVATED"
    USER_LOGIN = "USER_LOGIN"
    USER_LOGOUT = "USER_LOGOUT"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    SUSPICIOUS_TIMING = "SUSPICIOUS_TIMING"
    EXAM_REGRADED = "EXAM_REGRADED"


class User(Base):
    """Identity: a login account of either role"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    # Students log in with their university email as username
    username = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=True)
    role = Column(SQLEnum(UserRole), nullable=False, index=True)
    auth_state = Column(
        SQLEnum(AuthState), default=AuthState.UNVERIFIED, nullable=False
    )
    current_exam_session_id = Column(
        Integer, ForeignKey("exam_sessions.id"), nullable=True
    )
    must_change_password = Column(Boolean, default=True, nullable=False)
    is_locked = Column(Boolean, default=False, nullable=False)
    lockout_ends_at = Column(DateTime, nullable=True)
    failed_login_attempts = Column(Integer, default=0, nullable=False)
    last_failed_login_at = Column(DateTime, nullable=True)
    last_phase2_login = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    student = relationship("Student", back_populates="user", uselist=False)
    current_exam_session = relationship("ExamSession")
    login_sessions = relationship("LoginSession", back_populates="user")
    password_history = relationship(
        "PasswordHistory", back_populates="user", order_by="PasswordHistory.id"
    )
    audit_logs = relationship("AuditLog", back_populates="user")

    def __repr__(self):
        return f"<User(id={self.id}, username='{self.username}', role={self.role.value})>"

    @property
    def phase1_completed(self) -> bool:
        return self.auth_state != AuthState.UNVERIFIED

    @property
    def full_name(self) -> str:
        if self.student is not None:
            return self.student.full_name
        return self.username


class Student(Base):
    """Student profile, one-to-one with a User"""

    __tablename__ = "students"

    id = Column(Integer, primary_key=True)
    user_id = Column(
        Integer, ForeignKey("users.id"), unique=True, nullable=False, index=True
    )
    id_number = Column(String(50), unique=True, nullable=False, index=True)
    university_email = Column(String(255), unique=True, nullable=False)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    email = Column(String(255), nullable=True)
    batch_year = Column(String(10), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    user = relationship("User", back_populates="student")
    attempts = relationship("StudentExam", back_populates="student")

    def __repr__(self):
        return f"<Student(id={self.id}, id_number='{self.id_number}')>"

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class Exam(Base):
    """Exam definition"""

    __tablename__ = "exams"

    id = Column(Integer, primary_key=True)
    title = Column(String(200), nullable=False)
    academic_year = Column(Integer, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    start_at = Column(DateTime, nullable=False)
    end_at = Column(DateTime, nullable=False)
    is_published = Column(Boolean, default=False, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    questions = relationship(
        "Question",
        back_populates="exam",
        order_by="Question.question_order",
        cascade="all, delete-orphan",
    )
    sessions = relationship("ExamSession", back_populates="exam")
    attempts = relationship("StudentExam", back_populates="exam")

    def __repr__(self):
        return f"<Exam(id={self.id}, title='{self.title}', published={self.is_published})>"


class Question(Base):
    """Multiple-choice question of an exam"""

    __tablename__ = "questions"

    id = Column(Integer, primary_key=True)
    exam_id = Column(Integer, ForeignKey("exams.id"), nullable=False, index=True)
    question_text = Column(Text, nullable=False)
    question_order = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    exam = relationship("Exam", back_populates="questions")
    choices = relationship(
        "Choice",
        back_populates="question",
        order_by="Choice.choice_order",
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<Question(id={self.id}, exam_id={self.exam_id}, order={self.question_order})>"


class Choice(Base):
    """Answer option of a question"""

    __tablename__ = "choices"

    id = Column(Integer, primary_key=True)
    question_id = Column(
        Integer, ForeignKey("questions.id"), nullable=False, index=True
    )
    choice_text = Column(Text, nullable=False)
    is_correct = Column(Boolean, default=False, nullable=False)
    choice_order = Column(Integer, nullable=False)

    # Relationships
    question = relationship("Question", back_populates="choices")

    def __repr__(self):
        return f"<Choice(id={self.id}, question_id={self.question_id}, correct={self.is_correct})>"


class ExamSession(Base):
    """Coordinator-issued exam-day password gating Phase 2"""

    __tablename__ = "exam_sessions"
    __table_args__ = (
        # At most one active session per exam, enforced by the store as well
        Index(
            "uq_exam_sessions_active_exam",
            "exam_id",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )

    id = Column(Integer, primary_key=True)
    exam_id = Column(Integer, ForeignKey("exams.id"), nullable=False, index=True)
    session_password_hash = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    deactivated_at = Column(DateTime, nullable=True)

    # Relationships
    exam = relationship("Exam", back_populates="sessions")

    def __repr__(self):
        return f"<ExamSession(id={self.id}, exam_id={self.exam_id}, active={self.is_active})>"


class StudentExam(Base):
    """One student's attempt at one exam"""

    __tablename__ = "student_exams"
    __table_args__ = (
        UniqueConstraint("student_id", "exam_id", name="uq_student_exams_student_exam"),
    )

    id = Column(Integer, primary_key=True)
    student_id = Column(Integer, ForeignKey("students.id"), nullable=False, index=True)
    exam_id = Column(Integer, ForeignKey("exams.id"), nullable=False, index=True)
    started_at = Column(DateTime, nullable=False)
    submitted_at = Column(DateTime, nullable=True)
    is_submitted = Column(Boolean, default=False, nullable=False)
    auto_submitted = Column(Boolean, default=False, nullable=False)
    # Set by the integrity check; the next access submits the attempt
    force_submit = Column(Boolean, default=False, nullable=False)
    score = Column(Float, nullable=True)
    # Breakdown written with the score so later question edits never change it
    total_questions = Column(Integer, nullable=True)
    correct_count = Column(Integer, nullable=True)
    incorrect_count = Column(Integer, nullable=True)
    unanswered_count = Column(Integer, nullable=True)
    percentage = Column(Float, nullable=True)
    grade = Column(String(2), nullable=True)
    graded_at = Column(DateTime, nullable=True)

    # Relationships
    student = relationship("Student", back_populates="attempts")
    exam = relationship("Exam", back_populates="attempts")
    answers = relationship(
        "StudentAnswer", back_populates="attempt", cascade="all, delete-orphan"
    )

    def __repr__(self):
        return (
            f"<StudentExam(id={self.id}, student_id={self.student_id}, "
            f"exam_id={self.exam_id}, submitted={self.is_submitted})>"
        )


class StudentAnswer(Base):
    """Selected choice and review flag for one question of an attempt"""

    __tablename__ = "student_answers"
    __table_args__ = (
        UniqueConstraint(
            "student_exam_id", "question_id", name="uq_student_answers_attempt_question"
        ),
    )

    id = Column(Integer, primary_key=True)
    student_exam_id = Column(
        Integer, ForeignKey("student_exams.id"), nullable=False, index=True
    )
    question_id = Column(Integer, ForeignKey("questions.id"), nullable=False)
    choice_id = Column(Integer, ForeignKey("choices.id"), nullable=True)
    is_flagged = Column(Boolean, default=False, nullable=False)
    last_modified = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    attempt = relationship("StudentExam", back_populates="answers")
    question = relationship("Question")
    choice = relationship("Choice")

    def __repr__(self):
        return (
            f"<StudentAnswer(attempt={self.student_exam_id}, "
            f"question={self.question_id}, choice={self.choice_id})>"
        )


class LoginSession(Base):
    """Server-side record behind an issued access token"""

    __tablename__ = "login_sessions"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    session_token = Column(String(64), unique=True, nullable=False, index=True)
    login_phase = Column(Integer, nullable=False)
    ip_address = Column(String(45), nullable=True)  # IPv6 compatible
    user_agent = Column(String(500), nullable=True)
    exam_session_id = Column(Integer, ForeignKey("exam_sessions.id"), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    logout_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)

    # Relationships
    user = relationship("User", back_populates="login_sessions")
    exam_session = relationship("ExamSession")

    def __repr__(self):
        return f"<LoginSession(id={self.id}, user_id={self.user_id}, phase={self.login_phase}, active={self.is_active})>"


class FailedLoginAttempt(Base):
    """Append-only record of a rejected login"""

    __tablename__ = "failed_login_attempts"

    id = Column(Integer, primary_key=True)
    identifier = Column(String(255), nullable=False, index=True)
    login_phase = Column(Integer, nullable=False)
    error_type = Column(String(50), nullable=False)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)
    attempted_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    def __repr__(self):
        return f"<FailedLoginAttempt(id={self.id}, identifier={self.identifier}, error={self.error_type})>"

    @classmethod
    def record_attempt(
        cls,
        identifier: str,
        login_phase: int,
        error_type: str,
        attempted_at,
        user_id: Optional[int] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ):
        """Build a failed attempt row"""
        return cls(
            identifier=identifier,
            login_phase=login_phase,
            error_type=error_type,
            attempted_at=attempted_at,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )


class SuccessfulLoginAttempt(Base):
    """Append-only record of an accepted login"""

    __tablename__ = "successful_login_attempts"

    id = Column(Integer, primary_key=True)
    identifier = Column(String(255), nullable=False, index=True)
    login_phase = Column(Integer, nullable=False)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)
    login_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    def __repr__(self):
        return f"<SuccessfulLoginAttempt(id={self.id}, identifier={self.identifier})>"

    @classmethod
    def record_attempt(
        cls,
        identifier: str,
        login_phase: int,
        user_id: int,
        login_at,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ):
        """Build a successful attempt row"""
        return cls(
            identifier=identifier,
            login_phase=login_phase,
            user_id=user_id,
            login_at=login_at,
            ip_address=ip_address,
            user_agent=user_agent,
        )


class PasswordHistory(Base):
    """Previous credential hashes, checked to prevent reuse"""

    __tablename__ = "password_history"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    user = relationship("User", back_populates="password_history")


class AuditLog(Base):
    """Generic audit trail entry"""

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True)
    timestamp = Column(DateTime, default=utcnow, nullable=False, index=True)
    event_type = Column(String(64), nullable=False, index=True)
    description = Column(Text, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    student_id = Column(Integer, ForeignKey("students.id"), nullable=True)
    exam_id = Column(Integer, ForeignKey("exams.id"), nullable=True)
    student_exam_id = Column(Integer, ForeignKey("student_exams.id"), nullable=True)
    ip_address = Column(String(45), nullable=True)  # IPv6 compatible
    additional_data = Column(JSON, nullable=True)
    severity = Column(
        SQLEnum(AuditSeverity), default=AuditSeverity.INFO, nullable=False
    )

    # Relationships
    user = relationship("User", back_populates="audit_logs")

    def __repr__(self):
        return f"<AuditLog(id={self.id}, event_type={self.event_type}, user_id={self.user_id})>"

    @classmethod
    def log_event(
        cls,
        event_type: str,
        description: str,
        timestamp,
        severity: AuditSeverity = AuditSeverity.INFO,
        user_id: Optional[int] = None,
        student_id: Optional[int] = None,
        exam_id: Optional[int] = None,
        student_exam_id: Optional[int] = None,
        ip_address: Optional[str] = None,
        additional_data: Optional[Dict[str, Any]] = None,
    ):
        """Helper method to build audit events"""
        return cls(
            event_type=event_type,
            description=description,
            timestamp=timestamp,
            severity=severity,
            user_id=user_id,
            student_id=student_id,
            exam_id=exam_id,
            student_exam_id=student_exam_id,
            ip_address=ip_address,
            additional_data=additional_data,
        )

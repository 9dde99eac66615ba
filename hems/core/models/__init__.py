"""
Models package for HEMS

This package contains all database models and enums for the application.
"""

from .models import (
    Base,
    User,
    Student,
    Exam,
    Question,
    Choice,
    ExamSession,
    StudentExam,
    StudentAnswer,
    LoginSession,
    FailedLoginAttempt,
    SuccessfulLoginAttempt,
    PasswordHistory,
    AuditLog,
    UserRole,
    AuthState,
    AuditSeverity,
    AuditEventType,
)


__all__ = [
    "Base",
    "User",
    "Student",
    "Exam",
    "Question",
    "Choice",
    "ExamSession",
    "StudentExam",
    "StudentAnswer",
    "LoginSession",
    "FailedLoginAttempt",
    "SuccessfulLoginAttempt",
    "PasswordHistory",
    "AuditLog",
    "UserRole",
    "AuthState",
    "AuditSeverity",
    "AuditEventType",
]

"""
Core module for HEMS
"""

from .models import (
    Base,
    User,
    UserRole,
    AuthState,
    Student,
    Exam,
    ExamSession,
    StudentExam,
    AuditLog,
)
from .services import (
    DatabaseService,
    get_db_service,
    init_db_service,
    AuthService,
    get_auth_service,
    LoggingService,
    get_logging_service,
    get_logger,
)

__all__ = [
    # Models
    "Base",
    "User",
    "UserRole",
    "AuthState",
    "Student",
    "Exam",
    "ExamSession",
    "StudentExam",
    "AuditLog",
    # Services
    "DatabaseService",
    "get_db_service",
    "init_db_service",
    "AuthService",
    "get_auth_service",
    "LoggingService",
    "get_logging_service",
    "get_logger",
]

"""
Core services for HEMS
"""

from .database import DatabaseService, get_db_service, init_db_service, reset_db_service
from .auth import AuthContext, AuthService, get_auth_service
from .logging import LoggingService, get_logging_service, get_logger, reset_logging_service
from .settings_config_service import get_settings_service, reset_settings_service

# Exam-day services
from .audit_service import AuditService, get_audit_service
from .session_service import SessionService, get_session_service
from .exam_session_service import ExamSessionRegistry, get_exam_session_registry
from .timer_service import TimerService, get_timer_service
from .grading_service import GradingService, get_grading_service
from .exam_service import ExamService, get_exam_service

from . import (
    audit_service,
    auth,
    exam_service,
    exam_session_service,
    grading_service,
    session_service,
    timer_service,
)


def reset_services():
    """Drop every cached service so the next call rebuilds it from current settings"""
    auth._auth_service = None
    audit_service._audit_service = None
    session_service._session_service = None
    exam_session_service._exam_session_registry = None
    timer_service._timer_service = None
    grading_service._grading_service = None
    exam_service._exam_service = None
    reset_logging_service()
    reset_settings_service()
    reset_db_service()


__all__ = [
    "DatabaseService",
    "get_db_service",
    "init_db_service",
    "reset_db_service",
    "AuthContext",
    "AuthService",
    "get_auth_service",
    "LoggingService",
    "get_logging_service",
    "get_logger",
    "get_settings_service",
    # Exam-day services
    "AuditService",
    "get_audit_service",
    "SessionService",
    "get_session_service",
    "ExamSessionRegistry",
    "get_exam_session_registry",
    "TimerService",
    "get_timer_service",
    "GradingService",
    "get_grading_service",
    "ExamService",
    "get_exam_service",
    "reset_services",
]

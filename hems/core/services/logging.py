"""
Logging service for HEMS
"""

import os
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional
import structlog

from hems.core.security_utils import scrub_sensitive_data


def _scrub_processor(logger, method_name: str, event_dict: Dict[str, Any]):
    """Redact credentials from every string value before rendering."""
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = scrub_sensitive_data(value)
    return event_dict


class LoggingService:
    """Structured logging service"""

    def __init__(self, log_dir: Optional[str] = None, level: str = "INFO"):
        self.log_dir = Path(log_dir or os.getenv("HEMS_LOG_DIR") or "logs")
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.level = getattr(logging, level.upper(), logging.INFO)

        # Configure structlog
        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                structlog.stdlib.add_logger_name,
                structlog.stdlib.add_log_level,
                structlog.stdlib.PositionalArgumentsFormatter(),
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.UnicodeDecoder(),
                _scrub_processor,
                structlog.processors.JSONRenderer(),
            ],
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

        self._handlers: list = []
        self._setup_handlers()

    def _setup_handlers(self):
        """Set up logging handlers"""
        # Main application log
        main_handler = logging.FileHandler(self.log_dir / "hems.log")
        main_handler.setLevel(logging.DEBUG)
        main_handler.setFormatter(logging.Formatter("%(message)s"))

        # Error log
        error_handler = logging.FileHandler(self.log_dir / "errors.log")
        error_handler.setLevel(logging.WARNING)
        error_handler.setFormatter(logging.Formatter("%(message)s"))

        # Console handler for development
        console_handler = logging.StreamHandler()
        console_level = logging.DEBUG if os.getenv("HEMS_DEV_MODE") else self.level
        console_handler.setLevel(console_level)
        console_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )

        root_logger = logging.getLogger()
        root_logger.setLevel(logging.DEBUG)
        for handler in (main_handler, error_handler, console_handler):
            root_logger.addHandler(handler)
            self._handlers.append(handler)

    def close(self):
        """Detach and close the handlers this service installed."""
        root_logger = logging.getLogger()
        for handler in self._handlers:
            root_logger.removeHandler(handler)
            handler.close()
        self._handlers = []

    def get_logger(self, name: str) -> structlog.BoundLogger:
        """Get a structured logger"""
        return structlog.get_logger(name)

    def log_event(
        self,
        logger_name: str,
        level: str,
        event_type: str,
        user_id: Optional[int] = None,
        **kwargs,
    ):
        """Log a structured event"""
        logger = self.get_logger(logger_name)

        log_data = {
            "event_type": event_type,
            "user_id": user_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **kwargs,
        }

        level_method = getattr(logger, level.lower(), logger.info)
        level_method(event_type, **log_data)

    def log_auth_event(
        self,
        event: str,
        user_id: Optional[int] = None,
        username: Optional[str] = None,
        ip_address: Optional[str] = None,
        success: bool = True,
        **kwargs,
    ):
        """Log authentication event"""
        self.log_event(
            "auth",
            "INFO" if success else "WARNING",
            f"auth.{event}",
            user_id=user_id,
            username=username,
            ip_address=ip_address,
            success=success,
            **kwargs,
        )

    def log_exam_event(
        self,
        event: str,
        user_id: Optional[int] = None,
        exam_id: Optional[int] = None,
        attempt_id: Optional[int] = None,
        **kwargs,
    ):
        """Log exam lifecycle event"""
        self.log_event(
            "exam",
            "INFO",
            f"exam.{event}",
            user_id=user_id,
            exam_id=exam_id,
            attempt_id=attempt_id,
            **kwargs,
        )

    def log_security_event(
        self,
        event: str,
        user_id: Optional[int] = None,
        ip_address: Optional[str] = None,
        **kwargs,
    ):
        """Log tampering or timing anomaly"""
        self.log_event(
            "security",
            "WARNING",
            f"security.{event}",
            user_id=user_id,
            ip_address=ip_address,
            **kwargs,
        )

    def log_error(
        self,
        error_type: str,
        error_message: str,
        user_id: Optional[int] = None,
        **kwargs,
    ):
        """Log error event"""
        self.log_event(
            "error",
            "ERROR",
            f"error.{error_type}",
            user_id=user_id,
            error_message=error_message,
            **kwargs,
        )


# Global logging service instance
_logging_service: Optional[LoggingService] = None


def get_logging_service() -> LoggingService:
    """Get the global logging service instance"""
    global _logging_service
    if _logging_service is None:
        from hems.core.services.settings_config_service import get_settings_service

        defaults = get_settings_service().get_logging_defaults()
        _logging_service = LoggingService(
            log_dir=defaults["log_dir"], level=defaults["default_level"]
        )
    return _logging_service


def reset_logging_service():
    """Close and drop the global logging service. Useful for testing."""
    global _logging_service
    if _logging_service is not None:
        _logging_service.close()
    _logging_service = None


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a logger instance"""
    return get_logging_service().get_logger(name)

"""
Audit trail service for HEMS

Exam and authentication services add entries inside their own transaction
through ``build_entry``; standalone events go through ``log_event``.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select

from ..clock import Clock, utcnow
from ..models import (
    AuditLog,
    AuditSeverity,
    FailedLoginAttempt,
    SuccessfulLoginAttempt,
)
from .database import get_db_service
from .settings_config_service import get_settings_service


class AuditService:
    """Writes and reads ``AuditLog`` rows"""

    def __init__(self, clock: Clock = utcnow):
        self.clock = clock

    @property
    def db_service(self):
        return get_db_service()

    def build_entry(
        self,
        event_type: str,
        description: str,
        severity: AuditSeverity = AuditSeverity.INFO,
        **fields: Any,
    ) -> AuditLog:
        """Unsaved audit row stamped with the service clock"""
        return AuditLog.log_event(
            event_type=event_type,
            description=description,
            timestamp=self.clock(),
            severity=severity,
            **fields,
        )

    def log_event(
        self,
        event_type: str,
        description: str,
        severity: AuditSeverity = AuditSeverity.INFO,
        **fields: Any,
    ) -> int:
        """Persist one audit entry and return its id"""
        with self.db_service.get_session() as session:
            entry = self.build_entry(event_type, description, severity, **fields)
            session.add(entry)
            session.commit()
            return entry.id

    def get_audit_logs(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        event_type: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Audit entries in a time range, newest first"""
        query = select(AuditLog)
        if start is not None:
            query = query.where(AuditLog.timestamp >= start)
        if end is not None:
            query = query.where(AuditLog.timestamp <= end)
        if event_type is not None:
            query = query.where(AuditLog.event_type == event_type)
        return self._fetch(query)

    def get_user_audit_logs(
        self,
        user_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Audit entries for one user, newest first"""
        query = select(AuditLog).where(AuditLog.user_id == user_id)
        if start is not None:
            query = query.where(AuditLog.timestamp >= start)
        if end is not None:
            query = query.where(AuditLog.timestamp <= end)
        return self._fetch(query)

    def _fetch(self, query) -> List[Dict[str, Any]]:
        with self.db_service.get_session() as session:
            rows = session.execute(
                query.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
            ).scalars()
            return [self._to_dict(row) for row in rows]

    @staticmethod
    def _to_dict(entry: AuditLog) -> Dict[str, Any]:
        return {
            "id": entry.id,
            "timestamp": entry.timestamp.isoformat(),
            "event_type": entry.event_type,
            "description": entry.description,
            "severity": entry.severity.value,
            "user_id": entry.user_id,
            "student_id": entry.student_id,
            "exam_id": entry.exam_id,
            "student_exam_id": entry.student_exam_id,
            "ip_address": entry.ip_address,
            "additional_data": entry.additional_data,
        }

    def archive_old_records(self, cutoff: Optional[datetime] = None) -> Dict[str, int]:
        """Delete audit and login-attempt rows older than ``cutoff``.

        Defaults to ``[audit] archive_age_days`` before now. Returns the number
        of rows removed per table.
        """
        if cutoff is None:
            age_days = get_settings_service().getint("audit", "archive_age_days", 180)
            cutoff = self.clock() - timedelta(days=age_days)

        with self.db_service.get_session() as session:
            counts = {
                "audit_logs": session.execute(
                    delete(AuditLog).where(AuditLog.timestamp < cutoff)
                ).rowcount,
                "failed_login_attempts": session.execute(
                    delete(FailedLoginAttempt).where(
                        FailedLoginAttempt.attempted_at < cutoff
                    )
                ).rowcount,
                "successful_login_attempts": session.execute(
                    delete(SuccessfulLoginAttempt).where(
                        SuccessfulLoginAttempt.login_at < cutoff
                    )
                ).rowcount,
            }
            session.commit()
            return counts


# Global audit service instance
_audit_service: Optional[AuditService] = None


def get_audit_service() -> AuditService:
    """Get the global audit service instance"""
    global _audit_service
    if _audit_service is None:
        _audit_service = AuditService()
    return _audit_service

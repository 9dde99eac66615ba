"""
Test cases for the audit trail
"""

from datetime import timedelta

import pytest

from hems.core.models import AuditEventType, AuditSeverity
from hems.core.services.audit_service import AuditService


@pytest.fixture
def audit(fake_clock):
    return AuditService(clock=fake_clock)


def test_log_event_and_query_by_range(audit, fake_clock, coordinator):
    audit.log_event(AuditEventType.USER_LOGIN, "first", user_id=coordinator.id)
    fake_clock.advance(hours=1)
    audit.log_event(AuditEventType.USER_LOGOUT, "second", user_id=coordinator.id)
    fake_clock.advance(hours=1)
    audit.log_event(
        AuditEventType.ACCOUNT_LOCKED, "third", AuditSeverity.WARNING, additional_data={"n": 5}
    )

    everything = audit.get_audit_logs()
    assert [e["description"] for e in everything] == ["third", "second", "first"]
    assert everything[0]["severity"] == "Warning"
    assert everything[0]["additional_data"] == {"n": 5}

    window = audit.get_audit_logs(
        start=fake_clock() - timedelta(minutes=90), end=fake_clock() - timedelta(minutes=30)
    )
    assert [e["description"] for e in window] == ["second"]


def test_filter_by_event_type_and_user(audit, coordinator):
    audit.log_event(AuditEventType.USER_LOGIN, "login", user_id=coordinator.id)
    audit.log_event(AuditEventType.EXAM_PUBLISHED, "publish")

    assert len(audit.get_audit_logs(event_type=AuditEventType.EXAM_PUBLISHED)) == 1
    assert [e["description"] for e in audit.get_user_audit_logs(coordinator.id)] == ["login"]


def test_archive_old_records(audit, fake_clock):
    audit.log_event(AuditEventType.USER_LOGIN, "old")
    fake_clock.advance(days=200)
    audit.log_event(AuditEventType.USER_LOGIN, "recent")

    counts = audit.archive_old_records()

    assert counts["audit_logs"] == 1
    assert [e["description"] for e in audit.get_audit_logs()] == ["recent"]

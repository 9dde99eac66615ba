"""
Test cases for exam session issue, match and expiry
"""

import threading
from datetime import timedelta

import pytest
from sqlalchemy import select

from hems.core.models import ExamSession
from hems.core.results import ErrorKind
from hems.core.services.exam_session_service import ExamSessionRegistry


@pytest.fixture
def registry(fake_clock):
    return ExamSessionRegistry(clock=fake_clock)


@pytest.fixture
def exam(factory):
    return factory.exam()


def test_issue_session_stores_only_a_hash(registry, exam, db_service):
    result = registry.issue_session(exam.exam_id, "Session2024")

    assert result.ok
    with db_service.get_session() as session:
        stored = session.get(ExamSession, result.data["session_id"])
        assert stored.is_active
        assert stored.session_password_hash != "Session2024"
        assert stored.session_password_hash.startswith("$2")


@pytest.mark.parametrize("password", ["", "short", "has space1", "x" * 51])
def test_issue_session_rejects_bad_passwords(registry, exam, password):
    assert registry.issue_session(exam.exam_id, password).error_kind == ErrorKind.INVALID_FORMAT


def test_issue_session_requires_published_exam(registry, factory):
    draft = factory.exam(published=False)
    assert registry.issue_session(draft.exam_id, "Session2024").error_kind == ErrorKind.EXAM_NOT_PUBLISHED
    assert registry.issue_session(404, "Session2024").error_kind == ErrorKind.EXAM_NOT_FOUND


def test_new_session_replaces_active_one(registry, exam, db_service):
    first = registry.issue_session(exam.exam_id, "Session2024").data["session_id"]
    second = registry.issue_session(exam.exam_id, "Session2025").data["session_id"]

    with db_service.get_session() as session:
        active = session.execute(
            select(ExamSession.id).where(ExamSession.is_active.is_(True))
        ).scalars().all()
    assert active == [second]
    assert first != second


def test_match_password_across_active_sessions(registry, factory, db_service):
    first_exam = factory.exam(title="Morning Examination")
    second_exam = factory.exam(title="Afternoon Examination")
    registry.issue_session(first_exam.exam_id, "Morning2024")
    registry.issue_session(second_exam.exam_id, "Evening2024")

    with db_service.get_session() as session:
        sessions = registry.active_sessions(session)
        matched = registry.match_password(sessions, "Evening2024")
        assert matched.exam_id == second_exam.exam_id
        assert registry.match_password(sessions, "Nothing2024") is None


def test_deactivate_is_idempotent(registry, exam):
    session_id = registry.issue_session(exam.exam_id, "Session2024").data["session_id"]

    assert registry.deactivate(session_id) is True
    assert registry.deactivate(session_id) is False
    assert registry.list_active_sessions() == []


def test_sessions_expire_with_validity_window(registry, exam, fake_clock):
    registry.issue_session(exam.exam_id, "Session2024")
    assert registry.is_exam_time_now()

    fake_clock.advance(hours=registry.validity_hours, seconds=1)

    assert not registry.is_exam_time_now()
    assert registry.expire_stale_sessions() == 1
    assert registry.expire_stale_sessions() == 0


def test_list_active_sessions(registry, exam, fake_clock):
    session_id = registry.issue_session(exam.exam_id, "Session2024").data["session_id"]

    listed = registry.list_active_sessions()

    assert listed == [
        {
            "id": session_id,
            "exam_id": exam.exam_id,
            "created_at": fake_clock().isoformat(),
            "expires_at": (fake_clock() + timedelta(hours=24)).isoformat(),
        }
    ]


def test_racing_issues_leave_one_active_session(registry, exam, db_service):
    barrier = threading.Barrier(4)
    results = []

    def issue(password):
        barrier.wait()
        results.append(registry.issue_session(exam.exam_id, password))

    threads = [
        threading.Thread(target=issue, args=(f"Session202{i}",)) for i in range(4)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == 4
    assert all(result.ok for result in results)
    with db_service.get_session() as session:
        active = (
            session.execute(
                select(ExamSession).where(
                    ExamSession.exam_id == exam.exam_id, ExamSession.is_active.is_(True)
                )
            )
            .scalars()
            .all()
        )
    assert len(active) == 1

"""
Test cases for grading and regrading
"""

import pytest
from sqlalchemy import select

from hems.core.models import AuditEventType, AuditLog, AuthState, Question, StudentAnswer, StudentExam
from hems.core.results import ErrorKind
from hems.core.services.exam_service import ExamService
from hems.core.services.grading_service import GradingService


@pytest.fixture
def grading(fake_clock):
    return GradingService(clock=fake_clock)


@pytest.fixture
def exam_service(fake_clock):
    return ExamService(clock=fake_clock)


@pytest.fixture
def exam(factory):
    return factory.exam(question_count=5)


def _start(exam_service, factory, exam):
    student = factory.student(auth_state=AuthState.PHASE2)
    return exam_service.start_attempt(student.id, exam.exam_id).attempt_id


def test_grade_counts_correct_incorrect_unanswered(grading, exam_service, factory, exam):
    attempt_id = _start(exam_service, factory, exam)
    for i in range(3):
        exam_service.save_answer(attempt_id, exam.question_ids[i], exam.correct_choice_ids[i])
    exam_service.save_answer(attempt_id, exam.question_ids[3], exam.wrong_choice_ids[3])

    result = grading.grade_attempt(attempt_id)

    assert (result.total, result.correct, result.incorrect, result.unanswered) == (5, 3, 1, 1)
    assert result.percentage == 60.0
    assert result.grade == "D"


def test_compute_does_not_write(grading, exam_service, factory, exam, db_service):
    attempt_id = _start(exam_service, factory, exam)

    assert grading.get_grading_result(attempt_id).correct == 0
    with db_service.get_session() as session:
        assert session.get(StudentExam, attempt_id).graded_at is None


def test_foreign_choice_counts_as_incorrect(grading, exam_service, factory, exam, db_service):
    attempt_id = _start(exam_service, factory, exam)
    with db_service.get_session() as session:
        row = session.execute(
            select(StudentAnswer).where(
                StudentAnswer.student_exam_id == attempt_id,
                StudentAnswer.question_id == exam.question_ids[0],
            )
        ).scalar_one()
        row.choice_id = exam.correct_choice_ids[1]
        session.commit()

    result = grading.get_grading_result(attempt_id)

    assert result.correct == 0
    assert result.incorrect == 1


def test_unknown_attempt(grading):
    assert grading.grade_attempt(404) is None
    assert grading.get_grading_result(404) is None


def test_regrade_requires_submission(grading, exam_service, factory, exam, coordinator):
    attempt_id = _start(exam_service, factory, exam)

    assert grading.regrade_attempt(attempt_id, coordinator.id).error_kind == ErrorKind.ATTEMPT_NOT_SUBMITTED
    assert grading.regrade_attempt(404, coordinator.id).error_kind == ErrorKind.ATTEMPT_NOT_FOUND


def test_regrade_is_audited(grading, exam_service, factory, exam, coordinator, db_service):
    attempt_id = _start(exam_service, factory, exam)
    exam_service.save_answer(attempt_id, exam.question_ids[0], exam.correct_choice_ids[0])
    exam_service.submit(attempt_id)

    result = grading.regrade_attempt(attempt_id, coordinator.id)

    assert result.ok
    assert result.result.percentage == 20.0
    with db_service.get_session() as session:
        entry = session.execute(
            select(AuditLog).where(AuditLog.event_type == AuditEventType.EXAM_REGRADED)
        ).scalar_one()
        assert entry.user_id == coordinator.id
        assert entry.additional_data["current"] == {"percentage": 20.0, "grade": "F"}


def test_grade_all_submissions(grading, exam_service, factory, exam):
    submitted = _start(exam_service, factory, exam)
    _start(exam_service, factory, exam)
    exam_service.submit(submitted)

    results = grading.grade_all_submissions(exam.exam_id)

    assert [r.attempt_id for r in results] == [submitted]


def test_stored_result_ignores_later_question_changes(grading, exam_service, factory, exam, db_service):
    attempt_id = _start(exam_service, factory, exam)
    exam_service.save_answer(attempt_id, exam.question_ids[0], exam.correct_choice_ids[0])
    submitted = exam_service.submit(attempt_id).result

    with db_service.get_session() as session:
        session.add(Question(exam_id=exam.exam_id, question_text="Appended directly?", question_order=6))
        session.commit()

    with db_service.get_session() as session:
        attempt = session.get(StudentExam, attempt_id)
        assert (attempt.total_questions, attempt.correct_count, attempt.unanswered_count) == (5, 1, 4)
        assert grading.stored_result(session, attempt) == submitted
    assert grading.grade_all_submissions(exam.exam_id) == [submitted]


def test_validate_grading_criteria(grading, factory, exam):
    assert grading.validate_grading_criteria(exam.exam_id) == []
    assert grading.validate_grading_criteria(404) == ["Exam not found."]

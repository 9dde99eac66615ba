"""
Test cases for exam definitions and the exam-taking flow
"""

import threading
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from hems.core.models import (
    AuditEventType,
    AuditLog,
    AuthState,
    ExamSession,
    StudentAnswer,
    StudentExam,
)
from hems.core.results import ErrorKind
from hems.core.services.exam_service import ExamService


@pytest.fixture
def exam_service(fake_clock):
    return ExamService(clock=fake_clock)


@pytest.fixture
def exam(factory):
    return factory.exam(question_count=5, duration_minutes=60)


@pytest.fixture
def student(factory):
    return factory.student(auth_state=AuthState.PHASE2)


@pytest.fixture
def attempt_id(exam_service, exam, student):
    result = exam_service.start_attempt(student.id, exam.exam_id)
    assert result.ok, result.message
    return result.attempt_id


def _answer_rows(db_service, attempt_id):
    with db_service.get_session() as session:
        return (
            session.execute(
                select(StudentAnswer).where(StudentAnswer.student_exam_id == attempt_id)
            )
            .scalars()
            .all()
        )


class TestExamDefinitions:
    def test_create_exam_and_add_questions(self, exam_service, fake_clock):
        created = exam_service.create_exam(
            "Introduction to Programming", 2026, 90, fake_clock(), fake_clock() + timedelta(hours=3)
        )
        assert created.ok
        exam_id = created.data["exam_id"]

        first = exam_service.add_question(
            exam_id, "What does print() return in Python?", ["None", "A string", "Zero"], 0
        )
        second = exam_service.add_question(
            exam_id, "Which keyword defines a function?", ["func", "def"], 1
        )

        assert first.data["question_order"] == 1
        assert second.data["question_order"] == 2
        assert len(second.data["choice_ids"]) == 2

    @pytest.mark.parametrize(
        "title,year,duration",
        [("Shrt", 2026, 60), ("Valid Title", 1999, 60), ("Valid Title", 2026, 29), ("Valid Title", 2026, 481)],
    )
    def test_create_exam_rejects_out_of_range_values(self, exam_service, fake_clock, title, year, duration):
        result = exam_service.create_exam(
            title, year, duration, fake_clock(), fake_clock() + timedelta(hours=3)
        )
        assert result.error_kind == ErrorKind.INVALID_FORMAT

    def test_create_exam_rejects_inverted_window(self, exam_service, fake_clock):
        result = exam_service.create_exam(
            "Inverted Window", 2026, 60, fake_clock(), fake_clock() - timedelta(hours=1)
        )
        assert result.error_kind == ErrorKind.INVALID_FORMAT

    def test_add_question_validates_choices(self, exam_service, factory):
        draft = factory.exam(question_count=0, published=False)

        only_one = exam_service.add_question(draft.exam_id, "A question with one choice?", ["Yes"], 0)
        bad_index = exam_service.add_question(draft.exam_id, "A question with bad index?", ["A", "B"], 2)

        assert only_one.error_kind == ErrorKind.INVALID_FORMAT
        assert bad_index.error_kind == ErrorKind.INVALID_FORMAT

    def test_published_exam_rejects_new_questions(self, exam_service, exam):
        result = exam_service.add_question(exam.exam_id, "Late addition to the exam?", ["A", "B"], 0)
        assert result.error_kind == ErrorKind.INVALID_FORMAT

    def test_exam_with_attempts_rejects_new_questions(self, exam_service, attempt_id, exam):
        assert exam_service.unpublish_exam(exam.exam_id).ok

        result = exam_service.add_question(exam.exam_id, "Late addition to the exam?", ["A", "B"], 0)

        assert result.error_kind == ErrorKind.INVALID_FORMAT
        assert result.message == "Exams with attempts cannot be modified."

    def test_publish_requires_valid_structure(self, exam_service, factory):
        empty = factory.exam(question_count=0, published=False)

        result = exam_service.publish_exam(empty.exam_id)

        assert result.error_kind == ErrorKind.INVALID_FORMAT
        assert exam_service.validate_exam_for_publish(empty.exam_id) == ["Exam has no questions."]

    def test_publish_and_unpublish(self, exam_service, factory, db_service):
        draft = factory.exam(published=False)

        assert exam_service.publish_exam(draft.exam_id).ok
        session_id = factory.exam_session(draft.exam_id)
        assert exam_service.unpublish_exam(draft.exam_id).ok

        with db_service.get_session() as session:
            assert not session.get(ExamSession, session_id).is_active
            events = session.execute(select(AuditLog.event_type)).scalars().all()
        assert AuditEventType.EXAM_PUBLISHED in events
        assert AuditEventType.EXAM_UNPUBLISHED in events

    def test_publish_unknown_exam(self, exam_service):
        assert exam_service.publish_exam(404).error_kind == ErrorKind.EXAM_NOT_FOUND


class TestAttempts:
    def test_start_attempt_precreates_answers(self, exam_service, attempt_id, db_service, exam):
        rows = _answer_rows(db_service, attempt_id)

        assert sorted(r.question_id for r in rows) == sorted(exam.question_ids)
        assert all(r.choice_id is None and not r.is_flagged for r in rows)

    def test_start_attempt_twice_resumes(self, exam_service, attempt_id, exam, student):
        again = exam_service.start_attempt(student.id, exam.exam_id)

        assert again.ok
        assert again.attempt_id == attempt_id
        assert again.data["resumed"] is True

    def test_start_attempt_requires_published_exam(self, exam_service, factory, student):
        draft = factory.exam(published=False)
        result = exam_service.start_attempt(student.id, draft.exam_id)
        assert result.error_kind == ErrorKind.EXAM_NOT_PUBLISHED

    def test_start_attempt_unknown_exam(self, exam_service, student):
        assert exam_service.start_attempt(student.id, 999).error_kind == ErrorKind.EXAM_NOT_FOUND

    def test_start_attempt_checks_exam_session(self, exam_service, factory, exam, student):
        other = factory.exam(title="Other Examination")
        other_session = factory.exam_session(other.exam_id)

        result = exam_service.start_attempt(student.id, exam.exam_id, other_session)

        assert result.error_kind == ErrorKind.UNAUTHORIZED_ACCESS

    def test_attempt_view_hides_correct_choices(self, exam_service, attempt_id, student):
        result = exam_service.get_attempt_for_user(attempt_id, student.user_id)

        assert result.ok
        assert len(result.data["questions"]) == 5
        choice = result.data["questions"][0]["choices"][0]
        assert set(choice) == {"id", "order", "text"}
        assert result.data["remaining"]["total_seconds"] == 3600

    def test_attempt_view_enforces_ownership(self, exam_service, attempt_id, factory):
        intruder = factory.student()
        result = exam_service.get_attempt_for_user(attempt_id, intruder.user_id)
        assert result.error_kind == ErrorKind.UNAUTHORIZED_ACCESS


class TestAnswers:
    def test_save_answer_is_idempotent(self, exam_service, attempt_id, exam, db_service):
        question_id, choice_id = exam.question_ids[0], exam.correct_choice_ids[0]

        assert exam_service.save_answer(attempt_id, question_id, choice_id).ok
        assert exam_service.save_answer(attempt_id, question_id, choice_id).ok

        rows = [r for r in _answer_rows(db_service, attempt_id) if r.question_id == question_id]
        assert len(rows) == 1
        assert rows[0].choice_id == choice_id

    def test_save_answer_overwrites_and_clears(self, exam_service, attempt_id, exam, db_service):
        question_id = exam.question_ids[1]
        exam_service.save_answer(attempt_id, question_id, exam.wrong_choice_ids[1])
        exam_service.save_answer(attempt_id, question_id, exam.correct_choice_ids[1])
        rows = {r.question_id: r for r in _answer_rows(db_service, attempt_id)}
        assert rows[question_id].choice_id == exam.correct_choice_ids[1]

        exam_service.save_answer(attempt_id, question_id, None)
        rows = {r.question_id: r for r in _answer_rows(db_service, attempt_id)}
        assert rows[question_id].choice_id is None

    def test_save_answer_rejects_foreign_question(self, exam_service, attempt_id, factory):
        other = factory.exam(title="Other Examination")
        result = exam_service.save_answer(
            attempt_id, other.question_ids[0], other.correct_choice_ids[0]
        )
        assert result.error_kind == ErrorKind.INVALID_QUESTION

    def test_save_answer_rejects_choice_of_other_question(self, exam_service, attempt_id, exam):
        result = exam_service.save_answer(
            attempt_id, exam.question_ids[0], exam.correct_choice_ids[1]
        )
        assert result.error_kind == ErrorKind.INVALID_QUESTION

    def test_save_answer_checks_owner(self, exam_service, attempt_id, exam, factory):
        intruder = factory.student()
        result = exam_service.save_answer(
            attempt_id, exam.question_ids[0], exam.correct_choice_ids[0], intruder.user_id
        )
        assert result.error_kind == ErrorKind.UNAUTHORIZED_ACCESS

    def test_toggle_flag(self, exam_service, attempt_id, exam, db_service):
        question_id = exam.question_ids[2]

        assert exam_service.toggle_flag(attempt_id, question_id, True).ok
        assert {r.question_id: r for r in _answer_rows(db_service, attempt_id)}[question_id].is_flagged

        assert exam_service.toggle_flag(attempt_id, question_id, False).ok
        assert not {r.question_id: r for r in _answer_rows(db_service, attempt_id)}[question_id].is_flagged

    def test_flag_keeps_selected_choice(self, exam_service, attempt_id, exam, db_service):
        question_id = exam.question_ids[3]
        exam_service.save_answer(attempt_id, question_id, exam.correct_choice_ids[3])
        exam_service.toggle_flag(attempt_id, question_id, True)

        row = {r.question_id: r for r in _answer_rows(db_service, attempt_id)}[question_id]
        assert row.choice_id == exam.correct_choice_ids[3]
        assert row.is_flagged


class TestSubmission:
    def _answer_four_of_five(self, exam_service, attempt_id, exam):
        for question_id, choice_id in list(zip(exam.question_ids, exam.correct_choice_ids))[:4]:
            assert exam_service.save_answer(attempt_id, question_id, choice_id).ok

    def test_submit_grades_once(self, exam_service, attempt_id, exam, student, db_service):
        self._answer_four_of_five(exam_service, attempt_id, exam)

        first = exam_service.submit(attempt_id, student.user_id)
        second = exam_service.submit(attempt_id, student.user_id)

        assert first.ok and second.ok
        assert first.result.correct == 4
        assert first.result.unanswered == 1
        assert first.result.percentage == 80.0
        assert first.result.grade == "B"
        assert second.result == first.result
        assert second.data["already_submitted"] is True

        with db_service.get_session() as session:
            attempt = session.get(StudentExam, attempt_id)
            assert attempt.is_submitted
            assert not attempt.auto_submitted
            assert attempt.score == 4.0
            submitted_events = session.execute(
                select(func.count()).select_from(AuditLog).where(
                    AuditLog.event_type == AuditEventType.EXAM_SUBMITTED
                )
            ).scalar_one()
            assert submitted_events == 1
        assert db_service.get_user_by_id(student.user_id).auth_state == AuthState.SUBMITTED

    def test_mutations_after_submit_are_rejected(self, exam_service, attempt_id, exam):
        exam_service.submit(attempt_id)

        saved = exam_service.save_answer(attempt_id, exam.question_ids[0], exam.correct_choice_ids[0])
        flagged = exam_service.toggle_flag(attempt_id, exam.question_ids[0], True)

        assert saved.error_kind == ErrorKind.ALREADY_SUBMITTED
        assert flagged.error_kind == ErrorKind.ALREADY_SUBMITTED
        assert saved.result is not None

    def test_start_after_submit_reports_already_submitted(self, exam_service, attempt_id, exam, student):
        exam_service.submit(attempt_id)
        result = exam_service.start_attempt(student.id, exam.exam_id)
        assert result.error_kind == ErrorKind.ALREADY_SUBMITTED

    def test_get_result(self, exam_service, attempt_id):
        assert exam_service.get_result(attempt_id).error_kind == ErrorKind.ATTEMPT_NOT_SUBMITTED

        exam_service.submit(attempt_id)

        result = exam_service.get_result(attempt_id)
        assert result.ok
        assert result.result.total == 5

    def test_unknown_attempt(self, exam_service):
        assert exam_service.submit(12345).error_kind == ErrorKind.ATTEMPT_NOT_FOUND

    def test_result_survives_unpublish(self, exam_service, attempt_id, exam, student):
        self._answer_four_of_five(exam_service, attempt_id, exam)
        first = exam_service.submit(attempt_id, student.user_id)

        assert exam_service.unpublish_exam(exam.exam_id).ok
        added = exam_service.add_question(
            exam.exam_id, "Question added after submission?", ["Yes", "No"], 0
        )
        second = exam_service.submit(attempt_id, student.user_id)

        assert added.error_kind == ErrorKind.INVALID_FORMAT
        assert second.result == first.result
        assert (second.result.percentage, second.result.grade) == (80.0, "B")
        assert exam_service.get_result(attempt_id, student.user_id).result == first.result

    def test_concurrent_submits_grade_once(self, exam_service, attempt_id, exam, student, db_service):
        self._answer_four_of_five(exam_service, attempt_id, exam)
        barrier = threading.Barrier(4)
        results = []

        def submit():
            barrier.wait()
            results.append(exam_service.submit(attempt_id, student.user_id))

        threads = [threading.Thread(target=submit) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(results) == 4
        assert all(result.ok for result in results)
        assert len({(r.result.percentage, r.result.graded_at) for r in results}) == 1
        assert sum(1 for r in results if not r.data.get("already_submitted")) == 1
        with db_service.get_session() as session:
            submitted_events = session.execute(
                select(func.count()).select_from(AuditLog).where(
                    AuditLog.event_type == AuditEventType.EXAM_SUBMITTED
                )
            ).scalar_one()
        assert submitted_events == 1


class TestTimeouts:
    def test_save_after_expiry_times_out_and_auto_submits(
        self, exam_service, attempt_id, exam, fake_clock, db_service
    ):
        exam_service.save_answer(attempt_id, exam.question_ids[0], exam.correct_choice_ids[0])
        fake_clock.advance(minutes=61)

        assert exam_service.get_remaining_time(attempt_id).data["total_seconds"] == 0
        result = exam_service.save_answer(
            attempt_id, exam.question_ids[1], exam.correct_choice_ids[1]
        )

        assert result.error_kind == ErrorKind.SESSION_TIMEOUT
        assert result.auto_submitted
        assert result.result.correct == 1
        with db_service.get_session() as session:
            attempt = session.get(StudentExam, attempt_id)
            assert attempt.is_submitted
            assert attempt.auto_submitted

    def test_second_late_call_does_not_regrade(self, exam_service, attempt_id, exam, fake_clock):
        fake_clock.advance(minutes=61)

        first = exam_service.toggle_flag(attempt_id, exam.question_ids[0], True)
        second = exam_service.save_answer(attempt_id, exam.question_ids[0], exam.correct_choice_ids[0])

        assert first.error_kind == ErrorKind.SESSION_TIMEOUT
        assert second.error_kind == ErrorKind.ALREADY_SUBMITTED
        assert second.result.correct == 0

    def test_submit_after_expiry_is_a_timeout(self, exam_service, attempt_id, fake_clock):
        fake_clock.advance(minutes=60)
        result = exam_service.submit(attempt_id)
        assert result.error_kind == ErrorKind.SESSION_TIMEOUT
        assert result.result is not None

    def test_grace_overrun_flags_attempt_and_audits(
        self, exam_service, attempt_id, fake_clock, db_service, student
    ):
        fake_clock.advance(minutes=66)

        view = exam_service.get_attempt_for_user(attempt_id, student.user_id)

        assert view.ok
        assert view.auto_submitted
        assert view.data["is_submitted"]
        with db_service.get_session() as session:
            attempt = session.get(StudentExam, attempt_id)
            assert attempt.force_submit
            events = session.execute(select(AuditLog.event_type)).scalars().all()
        assert AuditEventType.SUSPICIOUS_TIMING in events
        assert AuditEventType.EXAM_AUTO_SUBMITTED in events

    def test_remaining_time_is_a_pure_read(self, exam_service, attempt_id, fake_clock, db_service):
        fake_clock.advance(minutes=90)

        remaining = exam_service.get_remaining_time(attempt_id)

        assert remaining.data == {"total_seconds": 0, "formatted": "00:00", "is_expired": True}
        with db_service.get_session() as session:
            assert not session.get(StudentExam, attempt_id).is_submitted

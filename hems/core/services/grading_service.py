"""
Grading service for HEMS

Turns the stored answers of an attempt into a score, percentage and letter
grade. Computing a result is pure; writing it is a separate step so the
submit path can guarantee one automatic grading pass per submission.
"""

from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..clock import Clock, utcnow
from ..models import (
    AuditEventType,
    Choice,
    Exam,
    Question,
    StudentAnswer,
    StudentExam,
)
from ..results import ErrorKind, ExamOperationResult, GradingResult
from .audit_service import AuditService
from .boundary import storage_boundary
from .database import get_db_service
from .logging import get_logging_service

GRADE_BANDS = ((90.0, "A"), (80.0, "B"), (70.0, "C"), (60.0, "D"))


def calculate_grade(percentage: float) -> str:
    """Letter grade for a percentage: A >= 90, B >= 80, C >= 70, D >= 60, else F"""
    for floor, letter in GRADE_BANDS:
        if percentage >= floor:
            return letter
    return "F"


def calculate_percentage(correct: int, total: int) -> float:
    if total == 0:
        return 0.0
    return round(correct / total * 100, 2)


def validate_exam_structure(exam: Exam) -> List[str]:
    """Problems that keep an exam from being published or graded"""
    problems = []
    if not exam.questions:
        problems.append("Exam has no questions.")
    for question in exam.questions:
        label = f"Question {question.question_order}"
        if len(question.choices) < 2:
            problems.append(f"{label} needs at least two choices.")
        correct = sum(1 for choice in question.choices if choice.is_correct)
        if correct != 1:
            problems.append(f"{label} must have exactly one correct choice (has {correct}).")
    return problems


def _system_error():
    return ExamOperationResult.failure(ErrorKind.SYSTEM_ERROR)


class GradingService:
    """Deterministic grading engine"""

    def __init__(self, clock: Clock = utcnow):
        self.clock = clock
        self.audit = AuditService(clock)
        self.logging_service = get_logging_service()

    @property
    def db_service(self):
        return get_db_service()

    def compute(self, session: Session, attempt: StudentExam) -> GradingResult:
        """Grade an attempt without writing anything"""
        question_ids = (
            session.execute(select(Question.id).where(Question.exam_id == attempt.exam_id))
            .scalars()
            .all()
        )
        # A choice only counts for the question it belongs to; a foreign one
        # joins to nothing and grades as incorrect.
        rows = session.execute(
            select(StudentAnswer.question_id, Choice.is_correct)
            .outerjoin(
                Choice,
                (Choice.id == StudentAnswer.choice_id)
                & (Choice.question_id == StudentAnswer.question_id),
            )
            .where(
                StudentAnswer.student_exam_id == attempt.id,
                StudentAnswer.choice_id.is_not(None),
            )
        ).all()
        answered = {row.question_id: bool(row.is_correct) for row in rows}

        total = len(question_ids)
        correct = sum(1 for qid in question_ids if answered.get(qid) is True)
        incorrect = sum(1 for qid in question_ids if answered.get(qid) is False)
        unanswered = total - correct - incorrect
        percentage = calculate_percentage(correct, total)
        return GradingResult(
            attempt_id=attempt.id,
            total=total,
            correct=correct,
            incorrect=incorrect,
            unanswered=unanswered,
            percentage=percentage,
            grade=calculate_grade(percentage),
            graded_at=attempt.graded_at,
        )

    def grade_in_session(self, session: Session, attempt: StudentExam) -> GradingResult:
        """Compute and overwrite the attempt's score fields; the caller commits"""
        result = self.compute(session, attempt)
        result.graded_at = self.clock()
        attempt.score = float(result.correct)
        attempt.total_questions = result.total
        attempt.correct_count = result.correct
        attempt.incorrect_count = result.incorrect
        attempt.unanswered_count = result.unanswered
        attempt.percentage = result.percentage
        attempt.grade = result.grade
        attempt.graded_at = result.graded_at
        return result

    def stored_result(self, session: Session, attempt: StudentExam) -> GradingResult:
        """The grading written at submit time; only ungraded rows are computed"""
        if attempt.graded_at is None or attempt.total_questions is None:
            return self.compute(session, attempt)
        return GradingResult(
            attempt_id=attempt.id,
            total=attempt.total_questions,
            correct=attempt.correct_count,
            incorrect=attempt.incorrect_count,
            unanswered=attempt.unanswered_count,
            percentage=attempt.percentage,
            grade=attempt.grade,
            graded_at=attempt.graded_at,
        )

    def get_grading_result(self, attempt_id: int) -> Optional[GradingResult]:
        with self.db_service.get_session() as session:
            attempt = session.get(StudentExam, attempt_id)
            if attempt is None:
                return None
            return self.compute(session, attempt)

    def grade_attempt(self, attempt_id: int) -> Optional[GradingResult]:
        with self.db_service.get_session() as session:
            attempt = session.get(StudentExam, attempt_id)
            if attempt is None:
                return None
            result = self.grade_in_session(session, attempt)
            session.commit()
            return result

    @storage_boundary(_system_error)
    def regrade_attempt(self, attempt_id: int, coordinator_id: int) -> ExamOperationResult:
        """Coordinator-initiated re-grade of a submitted attempt, audited"""
        with self.db_service.get_session() as session:
            attempt = session.get(StudentExam, attempt_id)
            if attempt is None:
                return ExamOperationResult.failure(ErrorKind.ATTEMPT_NOT_FOUND)
            if not attempt.is_submitted:
                return ExamOperationResult.failure(
                    ErrorKind.ATTEMPT_NOT_SUBMITTED, attempt_id=attempt_id
                )

            previous = {"percentage": attempt.percentage, "grade": attempt.grade}
            result = self.grade_in_session(session, attempt)
            session.add(
                self.audit.build_entry(
                    AuditEventType.EXAM_REGRADED,
                    f"Attempt {attempt_id} regraded",
                    user_id=coordinator_id,
                    exam_id=attempt.exam_id,
                    student_id=attempt.student_id,
                    student_exam_id=attempt_id,
                    additional_data={
                        "previous": previous,
                        "current": {"percentage": result.percentage, "grade": result.grade},
                    },
                )
            )
            session.commit()

        self.logging_service.log_exam_event(
            "regraded",
            user_id=coordinator_id,
            attempt_id=attempt_id,
            percentage=result.percentage,
        )
        return ExamOperationResult.success(
            "Attempt regraded", attempt_id=attempt_id, result=result
        )

    def grade_all_submissions(self, exam_id: int) -> List[GradingResult]:
        """Stored results for every submitted attempt of an exam"""
        with self.db_service.get_session() as session:
            attempts = (
                session.execute(
                    select(StudentExam)
                    .where(StudentExam.exam_id == exam_id, StudentExam.is_submitted.is_(True))
                    .order_by(StudentExam.id)
                )
                .scalars()
                .all()
            )
            return [self.stored_result(session, attempt) for attempt in attempts]

    def validate_grading_criteria(self, exam_id: int) -> List[str]:
        with self.db_service.get_session() as session:
            exam = session.get(Exam, exam_id)
            if exam is None:
                return ["Exam not found."]
            return validate_exam_structure(exam)


# Global grading service instance
_grading_service: Optional[GradingService] = None


def get_grading_service() -> GradingService:
    """Get the global grading service instance"""
    global _grading_service
    if _grading_service is None:
        _grading_service = GradingService()
    return _grading_service

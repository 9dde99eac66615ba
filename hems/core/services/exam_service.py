"""
Exam service for HEMS

Exam definition maintenance and the exam-taking operations. Every operation
that touches an attempt first re-checks its timer; an expired or flagged
attempt is submitted on the spot and the caller gets ``SESSION_TIMEOUT``.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..clock import Clock, utcnow
from ..models import (
    AuditEventType,
    AuthState,
    Choice,
    Exam,
    ExamSession,
    Question,
    StudentAnswer,
    StudentExam,
    User,
)
from ..results import ErrorKind, ExamOperationResult, GradingResult, TimeRemaining
from .audit_service import AuditService
from .boundary import storage_boundary
from .database import get_db_service
from .grading_service import GradingService, validate_exam_structure
from .logging import get_logging_service
from .timer_service import TimerService, remaining_seconds

TITLE_LENGTH = (5, 200)
ACADEMIC_YEAR_RANGE = (2000, 2050)
DURATION_MINUTES_RANGE = (30, 480)
QUESTION_TEXT_LENGTH = (10, 2000)
CHOICE_TEXT_LENGTH = (1, 500)

_UPSERT_DIALECTS = {"sqlite": sqlite.insert, "postgresql": postgresql.insert}


def _system_error():
    return ExamOperationResult.failure(ErrorKind.SYSTEM_ERROR)


def _length_ok(value: Optional[str], bounds: Tuple[int, int]) -> bool:
    return value is not None and bounds[0] <= len(value.strip()) <= bounds[1]


def _exam_summary(exam: Exam, question_count: int) -> Dict[str, Any]:
    return {
        "id": exam.id,
        "title": exam.title,
        "academic_year": exam.academic_year,
        "duration_minutes": exam.duration_minutes,
        "start_at": exam.start_at.isoformat(),
        "end_at": exam.end_at.isoformat(),
        "is_published": exam.is_published,
        "question_count": question_count,
    }


class ExamService:
    """Exam definitions, attempts, answers and submission"""

    def __init__(
        self,
        clock: Clock = utcnow,
        timer: Optional[TimerService] = None,
        grading: Optional[GradingService] = None,
    ):
        self.clock = clock
        self.timer = timer or TimerService(clock)
        self.grading = grading or GradingService(clock)
        self.audit = AuditService(clock)
        self.logging_service = get_logging_service()

    @property
    def db_service(self):
        return get_db_service()

    # ------------------------------------------------------------------
    # Exam definitions
    # ------------------------------------------------------------------

    @storage_boundary(_system_error)
    def create_exam(
        self,
        title: str,
        academic_year: int,
        duration_minutes: int,
        start_at: datetime,
        end_at: datetime,
        created_by: Optional[int] = None,
    ) -> ExamOperationResult:
        problems = []
        if not _length_ok(title, TITLE_LENGTH):
            problems.append("Title must be between 5 and 200 characters.")
        if not ACADEMIC_YEAR_RANGE[0] <= academic_year <= ACADEMIC_YEAR_RANGE[1]:
            problems.append("Academic year must be between 2000 and 2050.")
        if not DURATION_MINUTES_RANGE[0] <= duration_minutes <= DURATION_MINUTES_RANGE[1]:
            problems.append("Duration must be between 30 and 480 minutes.")
        if end_at <= start_at:
            problems.append("Exam end must be after its start.")
        if problems:
            return ExamOperationResult.failure(
                ErrorKind.INVALID_FORMAT, " ".join(problems), data={"problems": problems}
            )

        with self.db_service.get_session() as session:
            exam = Exam(
                title=title.strip(),
                academic_year=academic_year,
                duration_minutes=duration_minutes,
                start_at=start_at,
                end_at=end_at,
                is_published=False,
                created_at=self.clock(),
            )
            session.add(exam)
            session.commit()
            self.logging_service.log_exam_event("created", user_id=created_by, exam_id=exam.id)
            return ExamOperationResult.success("Exam created", data={"exam_id": exam.id})

    @storage_boundary(_system_error)
    def add_question(
        self,
        exam_id: int,
        question_text: str,
        choice_texts: Sequence[str],
        correct_index: int,
    ) -> ExamOperationResult:
        """Append a question with its choices; ``correct_index`` is 0-based"""
        problems = []
        if not _length_ok(question_text, QUESTION_TEXT_LENGTH):
            problems.append("Question text must be between 10 and 2000 characters.")
        if len(choice_texts) < 2:
            problems.append("A question needs at least two choices.")
        if any(not _length_ok(text, CHOICE_TEXT_LENGTH) for text in choice_texts):
            problems.append("Choice text must be between 1 and 500 characters.")
        if not 0 <= correct_index < len(choice_texts):
            problems.append("Correct choice index is out of range.")
        if problems:
            return ExamOperationResult.failure(
                ErrorKind.INVALID_FORMAT, " ".join(problems), data={"problems": problems}
            )

        with self.db_service.get_session() as session:
            exam = session.get(Exam, exam_id)
            if exam is None:
                return ExamOperationResult.failure(ErrorKind.EXAM_NOT_FOUND)
            if exam.is_published:
                return ExamOperationResult.failure(
                    ErrorKind.INVALID_FORMAT, "Published exams cannot be modified."
                )
            has_attempts = session.execute(
                select(StudentExam.id).where(StudentExam.exam_id == exam_id).limit(1)
            ).first()
            if has_attempts is not None:
                return ExamOperationResult.failure(
                    ErrorKind.INVALID_FORMAT, "Exams with attempts cannot be modified."
                )

            next_order = (
                session.execute(
                    select(func.max(Question.question_order)).where(Question.exam_id == exam_id)
                ).scalar()
                or 0
            ) + 1
            question = Question(
                exam_id=exam_id,
                question_text=question_text.strip(),
                question_order=next_order,
                created_at=self.clock(),
            )
            question.choices = [
                Choice(choice_text=text.strip(), is_correct=(i == correct_index), choice_order=i + 1)
                for i, text in enumerate(choice_texts)
            ]
            session.add(question)
            session.commit()
            return ExamOperationResult.success(
                "Question added",
                data={
                    "question_id": question.id,
                    "question_order": next_order,
                    "choice_ids": [choice.id for choice in question.choices],
                },
            )

    def _summaries(self, session: Session, *criteria) -> List[Dict[str, Any]]:
        counts = (
            select(Question.exam_id, func.count(Question.id).label("question_count"))
            .group_by(Question.exam_id)
            .subquery()
        )
        rows = session.execute(
            select(Exam, func.coalesce(counts.c.question_count, 0))
            .outerjoin(counts, counts.c.exam_id == Exam.id)
            .where(*criteria)
            .order_by(Exam.start_at, Exam.id)
        ).all()
        return [_exam_summary(exam, count) for exam, count in rows]

    def list_exams(self, published_only: bool = False) -> List[Dict[str, Any]]:
        """Every exam, or only the published ones"""
        criteria = [Exam.is_published.is_(True)] if published_only else []
        with self.db_service.get_session() as session:
            return self._summaries(session, *criteria)

    def get_available_exams(self, exam_session_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Exams a student may start.

        A student bound to an exam session only sees that session's exam,
        and only while the session is active and the exam published.
        """
        with self.db_service.get_session() as session:
            if exam_session_id is None:
                return self._summaries(session, Exam.is_published.is_(True))
            exam_session = session.get(ExamSession, exam_session_id)
            if exam_session is None or not exam_session.is_active:
                return []
            return self._summaries(
                session, Exam.id == exam_session.exam_id, Exam.is_published.is_(True)
            )

    (_system_error)
    def get_exam(self, exam_id: int) -> ExamOperationResult:
        with self.db_service.get_session() as session:
            summaries = self._summaries(session, Exam.id == exam_id)
        if not summaries:
            return ExamOperationResult.failure(ErrorKind.EXAM_NOT_FOUND)
        return ExamOperationResult.success(data=summaries[0])

    def validate_exam_for_publish(self, exam_id: int) -> List[str]:
        with self.db_service.get_session() as session:
            exam = session.get(Exam, exam_id)
            if exam is None:
                return ["Exam not found."]
            return validate_exam_structure(exam)

    @storage_boundary(_system_error)
    def publish_exam(self, exam_id: int, coordinator_id: Optional[int] = None) -> ExamOperationResult:
        with self.db_service.get_session() as session:
            exam = session.get(Exam, exam_id)
            if exam is None:
                return ExamOperationResult.failure(ErrorKind.EXAM_NOT_FOUND)
            problems = validate_exam_structure(exam)
            if problems:
                return ExamOperationResult.failure(
                    ErrorKind.INVALID_FORMAT, " ".join(problems), data={"problems": problems}
                )
            exam.is_published = True
            session.add(
                self.audit.build_entry(
                    AuditEventType.EXAM_PUBLISHED,
                    f"Exam {exam_id} published",
                    user_id=coordinator_id,
                    exam_id=exam_id,
                )
            )
            session.commit()
        self.logging_service.log_exam_event("published", user_id=coordinator_id, exam_id=exam_id)
        return ExamOperationResult.success("Exam published", data={"exam_id": exam_id})

    @storage_boundary(_system_error)
    def unpublish_exam(self, exam_id: int, coordinator_id: Optional[int] = None) -> ExamOperationResult:
        """Unpublish an exam and close its exam sessions"""
        with self.db_service.get_session() as session:
            exam = session.get(Exam, exam_id)
            if exam is None:
                return ExamOperationResult.failure(ErrorKind.EXAM_NOT_FOUND)
            now = self.clock()
            exam.is_published = False
            closed = session.execute(
                update(ExamSession)
                .where(ExamSession.exam_id == exam_id, ExamSession.is_active.is_(True))
                .values(is_active=False, deactivated_at=now)
            ).rowcount
            session.add(
                self.audit.build_entry(
                    AuditEventType.EXAM_UNPUBLISHED,
                    f"Exam {exam_id} unpublished",
                    user_id=coordinator_id,
                    exam_id=exam_id,
                    additional_data={"deactivated_sessions": closed},
                )
            )
            session.commit()
        self.logging_service.log_exam_event("unpublished", user_id=coordinator_id, exam_id=exam_id)
        return ExamOperationResult.success("Exam unpublished", data={"exam_id": exam_id})

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    def _load_attempt(
        self, session: Session, attempt_id: int, user_id: Optional[int]
    ) -> Tuple[Optional[StudentExam], Optional[ExamOperationResult]]:
        attempt = session.get(StudentExam, attempt_id)
        if attempt is None:
            return None, ExamOperationResult.failure(ErrorKind.ATTEMPT_NOT_FOUND)
        if user_id is not None and attempt.student.user_id != user_id:
            self.logging_service.log_security_event(
                "foreign_attempt_access", user_id=user_id, attempt_id=attempt_id
            )
            return None, ExamOperationResult.failure(ErrorKind.UNAUTHORIZED_ACCESS)
        return attempt, None

    def _finalize(
        self, session: Session, attempt: StudentExam, auto: bool
    ) -> Tuple[GradingResult, bool]:
        """Flip ``is_submitted`` once and grade; commits.

        Returns the result and whether this call performed the submission. A
        call that loses the race returns the winner's result untouched.
        """
        now = self.clock()
        won = session.execute(
            update(StudentExam)
            .where(StudentExam.id == attempt.id, StudentExam.is_submitted.is_(False))
            .values(is_submitted=True, submitted_at=now, auto_submitted=auto)
            .execution_options(synchronize_session="fetch")
        ).rowcount == 1

        if not won:
            session.commit()
            session.refresh(attempt)
            return self.grading.stored_result(session, attempt), False

        result = self.grading.grade_in_session(session, attempt)
        session.execute(
            update(User)
            .where(User.id == attempt.student.user_id)
            .values(auth_state=AuthState.SUBMITTED, current_exam_session_id=None)
        )
        event = AuditEventType.EXAM_AUTO_SUBMITTED if auto else AuditEventType.EXAM_SUBMITTED
        session.add(
            self.audit.build_entry(
                event,
                f"Attempt {attempt.id} {'auto-' if auto else ''}submitted",
                user_id=attempt.student.user_id,
                student_id=attempt.student_id,
                exam_id=attempt.exam_id,
                student_exam_id=attempt.id,
                additional_data={"percentage": result.percentage, "grade": result.grade},
            )
        )
        session.commit()
        self.logging_service.log_exam_event(
            "auto_submitted" if auto else "submitted",
            user_id=attempt.student.user_id,
            exam_id=attempt.exam_id,
            attempt_id=attempt.id,
            percentage=result.percentage,
            grade=result.grade,
        )
        return result, True

    def _expire_if_due(self, session: Session, attempt: StudentExam) -> Optional[ExamOperationResult]:
        """``SESSION_TIMEOUT`` (after auto-submitting) when time is up, else None"""
        exam = attempt.exam
        self.timer.check_integrity(session, attempt, exam)
        if not attempt.force_submit and remaining_seconds(attempt, exam, self.clock()) > 0:
            return None
        result, performed = self._finalize(session, attempt, auto=True)
        return ExamOperationResult.failure(
            ErrorKind.SESSION_TIMEOUT,
            attempt_id=attempt.id,
            result=result,
            auto_submitted=performed,
        )

    def _guard_mutation(self, session: Session, attempt: StudentExam) -> Optional[ExamOperationResult]:
        if attempt.is_submitted:
            return ExamOperationResult.failure(
                ErrorKind.ALREADY_SUBMITTED,
                attempt_id=attempt.id,
                result=self.grading.stored_result(session, attempt),
            )
        return self._expire_if_due(session, attempt)

    @storage_boundary(_system_error)
    def start_attempt(
        self, student_id: int, exam_id: int, exam_session_id: Optional[int] = None
    ) -> ExamOperationResult:
        """Begin (or resume) the student's single attempt at an exam"""
        with self.db_service.get_session() as session:
            exam = session.get(Exam, exam_id)
            if exam is None:
                return ExamOperationResult.failure(ErrorKind.EXAM_NOT_FOUND)
            if not exam.is_published:
                return ExamOperationResult.failure(ErrorKind.EXAM_NOT_PUBLISHED)

            now = self.clock()
            if exam_session_id is not None:
                exam_session = session.get(ExamSession, exam_session_id)
                if (
                    exam_session is None
                    or exam_session.exam_id != exam_id
                    or not exam_session.is_active
                    or exam_session.expires_at <= now
                ):
                    return ExamOperationResult.failure(ErrorKind.UNAUTHORIZED_ACCESS)

            attempt = self._find_attempt(session, student_id, exam_id)
            if attempt is None:
                attempt = StudentExam(student_id=student_id, exam_id=exam_id, started_at=now)
                attempt.answers = [
                    StudentAnswer(question_id=q.id, choice_id=None, is_flagged=False, last_modified=now)
                    for q in exam.questions
                ]
                session.add(attempt)
                try:
                    session.flush()
                except IntegrityError:
                    # Lost a double-start race; continue with the winner's row
                    session.rollback()
                    attempt = self._find_attempt(session, student_id, exam_id)
                else:
                    session.add(
                        self.audit.build_entry(
                            AuditEventType.EXAM_STARTED,
                            f"Exam {exam_id} started",
                            user_id=attempt.student.user_id,
                            student_id=student_id,
                            exam_id=exam_id,
                            student_exam_id=attempt.id,
                        )
                    )
                    session.commit()
                    self.logging_service.log_exam_event(
                        "started", exam_id=exam_id, attempt_id=attempt.id, student_id=student_id
                    )
                    return ExamOperationResult.success(
                        "Exam started", attempt_id=attempt.id, data={"resumed": False}
                    )

            blocked = self._guard_mutation(session, attempt)
            if blocked is not None:
                return blocked
            return ExamOperationResult.success(
                "Exam resumed", attempt_id=attempt.id, data={"resumed": True}
            )

    @staticmethod
    def _find_attempt(session: Session, student_id: int, exam_id: int) -> Optional[StudentExam]:
        return session.execute(
            select(StudentExam).where(
                StudentExam.student_id == student_id, StudentExam.exam_id == exam_id
            )
        ).scalar_one_or_none()

    @storage_boundary(_system_error)
    def get_attempt_for_user(self, attempt_id: int, user_id: int) -> ExamOperationResult:
        """Attempt view for its owner: questions, choices (without correctness) and answers"""
        with self.db_service.get_session() as session:
            attempt, failure = self._load_attempt(session, attempt_id, user_id)
            if failure is not None:
                return failure

            auto_submitted = False
            if not attempt.is_submitted:
                timed_out = self._expire_if_due(session, attempt)
                auto_submitted = timed_out is not None

            exam = attempt.exam
            answers = {a.question_id: a for a in attempt.answers}
            data: Dict[str, Any] = {
                "attempt_id": attempt.id,
                "exam_id": exam.id,
                "title": exam.title,
                "duration_minutes": exam.duration_minutes,
                "started_at": attempt.started_at.isoformat(),
                "is_submitted": attempt.is_submitted,
                "remaining": TimeRemaining(
                    remaining_seconds(attempt, exam, self.clock())
                ).to_dict(),
                "questions": [
                    {
                        "id": q.id,
                        "order": q.question_order,
                        "text": q.question_text,
                        "choices": [
                            {"id": c.id, "order": c.choice_order, "text": c.choice_text}
                            for c in q.choices
                        ],
                        "selected_choice_id": answers[q.id].choice_id if q.id in answers else None,
                        "is_flagged": answers[q.id].is_flagged if q.id in answers else False,
                    }
                    for q in exam.questions
                ],
            }
            result = self.grading.stored_result(session, attempt) if attempt.is_submitted else None
            return ExamOperationResult.success(
                attempt_id=attempt.id, result=result, auto_submitted=auto_submitted, data=data
            )

    def _upsert_answer(
        self, session: Session, attempt_id: int, question_id: int, values: Dict[str, Any]
    ) -> None:
        """Atomic insert-or-update of the (attempt, question) answer row"""
        values = {**values, "last_modified": self.clock()}
        insert = _UPSERT_DIALECTS.get(session.get_bind().dialect.name)
        if insert is not None:
            stmt = insert(StudentAnswer).values(
                student_exam_id=attempt_id, question_id=question_id, **values
            )
            session.execute(
                stmt.on_conflict_do_update(
                    index_elements=["student_exam_id", "question_id"], set_=values
                )
            )
            return

        try:
            with session.begin_nested():
                session.add(
                    StudentAnswer(student_exam_id=attempt_id, question_id=question_id, **values)
                )
        except IntegrityError:
            session.execute(
                update(StudentAnswer)
                .where(
                    StudentAnswer.student_exam_id == attempt_id,
                    StudentAnswer.question_id == question_id,
                )
                .values(**values)
            )

    def _check_question(
        self, session: Session, attempt: StudentExam, question_id: int, choice_id: Optional[int] = None
    ) -> Optional[ExamOperationResult]:
        question = session.get(Question, question_id)
        if question is None or question.exam_id != attempt.exam_id:
            return ExamOperationResult.failure(ErrorKind.INVALID_QUESTION, attempt_id=attempt.id)
        if choice_id is not None:
            choice = session.get(Choice, choice_id)
            if choice is None or choice.question_id != question_id:
                return ExamOperationResult.failure(ErrorKind.INVALID_QUESTION, attempt_id=attempt.id)
        return None

    @storage_boundary(_system_error)
    def save_answer(
        self,
        attempt_id: int,
        question_id: int,
        choice_id: Optional[int],
        user_id: Optional[int] = None,
    ) -> ExamOperationResult:
        """Record the selected choice; ``None`` clears the answer"""
        with self.db_service.get_session() as session:
            attempt, failure = self._load_attempt(session, attempt_id, user_id)
            if failure is not None:
                return failure
            blocked = self._guard_mutation(session, attempt)
            if blocked is not None:
                return blocked
            invalid = self._check_question(session, attempt, question_id, choice_id)
            if invalid is not None:
                return invalid

            self._upsert_answer(session, attempt_id, question_id, {"choice_id": choice_id})
            session.add(
                self.audit.build_entry(
                    AuditEventType.ANSWER_SAVED,
                    f"Answer saved for question {question_id}",
                    user_id=attempt.student.user_id,
                    student_id=attempt.student_id,
                    exam_id=attempt.exam_id,
                    student_exam_id=attempt_id,
                    additional_data={"question_id": question_id, "choice_id": choice_id},
                )
            )
            session.commit()
            return ExamOperationResult.success("Answer saved", attempt_id=attempt_id)

    @storage_boundary(_system_error)
    def toggle_flag(
        self,
        attempt_id: int,
        question_id: int,
        flagged: bool,
        user_id: Optional[int] = None,
    ) -> ExamOperationResult:
        """Set or clear the review flag of a question"""
        with self.db_service.get_session() as session:
            attempt, failure = self._load_attempt(session, attempt_id, user_id)
            if failure is not None:
                return failure
            blocked = self._guard_mutation(session, attempt)
            if blocked is not None:
                return blocked
            invalid = self._check_question(session, attempt, question_id)
            if invalid is not None:
                return invalid

            self._upsert_answer(session, attempt_id, question_id, {"is_flagged": bool(flagged)})
            session.add(
                self.audit.build_entry(
                    AuditEventType.QUESTION_FLAGGED if flagged else AuditEventType.QUESTION_UNFLAGGED,
                    f"Question {question_id} {'flagged' if flagged else 'unflagged'}",
                    user_id=attempt.student.user_id,
                    student_id=attempt.student_id,
                    exam_id=attempt.exam_id,
                    student_exam_id=attempt_id,
                    additional_data={"question_id": question_id},
                )
            )
            session.commit()
            return ExamOperationResult.success(
                "Flag updated", attempt_id=attempt_id, data={"flagged": bool(flagged)}
            )

    @storage_boundary(_system_error)
    def submit(self, attempt_id: int, user_id: Optional[int] = None) -> ExamOperationResult:
        """Submit and grade. Repeat calls return the original result."""
        with self.db_service.get_session() as session:
            attempt, failure = self._load_attempt(session, attempt_id, user_id)
            if failure is not None:
                return failure
            if attempt.is_submitted:
                return ExamOperationResult.success(
                    "Exam already submitted",
                    attempt_id=attempt_id,
                    result=self.grading.stored_result(session, attempt),
                    data={"already_submitted": True},
                )
            timed_out = self._expire_if_due(session, attempt)
            if timed_out is not None:
                return timed_out

            result, performed = self._finalize(session, attempt, auto=False)
            return ExamOperationResult.success(
                "Exam submitted" if performed else "Exam already submitted",
                attempt_id=attempt_id,
                result=result,
                data={"already_submitted": not performed},
            )

    @storage_boundary(_system_error)
    def get_remaining_time(self, attempt_id: int, user_id: Optional[int] = None) -> ExamOperationResult:
        """Derived remaining time; a read with no side effects"""
        with self.db_service.get_session() as session:
            attempt, failure = self._load_attempt(session, attempt_id, user_id)
            if failure is not None:
                return failure
            remaining = TimeRemaining(remaining_seconds(attempt, attempt.exam, self.clock()))
            return ExamOperationResult.success(attempt_id=attempt_id, data=remaining.to_dict())

    @storage_boundary(_system_error)
    def get_result(self, attempt_id: int, user_id: Optional[int] = None) -> ExamOperationResult:
        with self.db_service.get_session() as session:
            attempt, failure = self._load_attempt(session, attempt_id, user_id)
            if failure is not None:
                return failure
            if not attempt.is_submitted:
                return ExamOperationResult.failure(ErrorKind.ATTEMPT_NOT_SUBMITTED, attempt_id=attempt_id)
            return ExamOperationResult.success(
                attempt_id=attempt_id, result=self.grading.stored_result(session, attempt)
            )


# Global exam service instance
_exam_service: Optional[ExamService] = None


def get_exam_service() -> ExamService:
    """Get the global exam service instance"""
    global _exam_service
    if _exam_service is None:
        _exam_service = ExamService()
    return _exam_service

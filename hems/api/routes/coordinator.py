from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from hems.api.dependencies import operation_response, raise_for_kind
from hems.api.security import require_coordinator
from hems.core.models import User
from hems.core.results import ErrorKind
from hems.core.services.audit_service import AuditService, get_audit_service
from hems.core.services.exam_service import ExamService, get_exam_service
from hems.core.services.exam_session_service import (
    ExamSessionRegistry,
    get_exam_session_registry,
)
from hems.core.services.grading_service import GradingService, get_grading_service

router = APIRouter(prefix="/api/coordinator", tags=["coordinator"])

# --- Pydantic Models ---


class ExamCreate(BaseModel):
    title: str = Field(..., min_length=5, max_length=200)
    academic_year: int = Field(..., ge=2000, le=2050)
    duration_minutes: int = Field(..., ge=30, le=480)
    start_at: datetime
    end_at: datetime


class QuestionCreate(BaseModel):
    question_text: str = Field(..., min_length=10, max_length=2000)
    choices: List[str] = Field(..., min_length=2)
    correct_index: int = Field(..., ge=0)


class SessionIssue(BaseModel):
    password: str = Field(..., pattern=r"^[A-Za-z0-9]{6,50}$")


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored timestamps are naive UTC"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@router.get("/exams")
async def list_exams(
    published_only: bool = False,
    current_user: User = Depends(require_coordinator),
    exam_service: ExamService = Depends(get_exam_service),
):
    return exam_service.list_exams(published_only=published_only)


@router.get("/exams/{exam_id}")
async def get_exam(
    exam_id: int,
    current_user: User = Depends(require_coordinator),
    exam_service: ExamService = Depends(get_exam_service),
):
    return operation_response(exam_service.get_exam(exam_id))


@router.post("/exams")
async def create_exam(
    payload: ExamCreate,
    current_user: User = Depends(require_coordinator),
    exam_service: ExamService = Depends(get_exam_service),
):
    result = exam_service.create_exam(
        payload.title,
        payload.academic_year,
        payload.duration_minutes,
        _naive_utc(payload.start_at),
        _naive_utc(payload.end_at),
        created_by=current_user.id,
    )
    return operation_response(result)


@router.post("/exams/{exam_id}/questions")
async def add_question(
    exam_id: int,
    payload: QuestionCreate,
    current_user: User = Depends(require_coordinator),
    exam_service: ExamService = Depends(get_exam_service),
):
    result = exam_service.add_question(
        exam_id, payload.question_text, payload.choices, payload.correct_index
    )
    return operation_response(result)


@router.post("/exams/{exam_id}/publish")
async def publish_exam(
    exam_id: int,
    current_user: User = Depends(require_coordinator),
    exam_service: ExamService = Depends(get_exam_service),
):
    return operation_response(exam_service.publish_exam(exam_id, current_user.id))


@router.post("/exams/{exam_id}/unpublish")
async def unpublish_exam(
    exam_id: int,
    current_user: User = Depends(require_coordinator),
    exam_service: ExamService = Depends(get_exam_service),
):
    return operation_response(exam_service.unpublish_exam(exam_id, current_user.id))


@router.get("/exams/{exam_id}/results")
async def exam_results(
    exam_id: int,
    current_user: User = Depends(require_coordinator),
    grading_service: GradingService = Depends(get_grading_service),
):
    """Stored results of every submitted attempt"""
    return [r.to_dict() for r in grading_service.grade_all_submissions(exam_id)]


@router.post("/exams/{exam_id}/sessions")
async def issue_exam_session(
    exam_id: int,
    payload: SessionIssue,
    current_user: User = Depends(require_coordinator),
    registry: ExamSessionRegistry = Depends(get_exam_session_registry),
):
    return operation_response(
        registry.issue_session(exam_id, payload.password, issued_by=current_user.id)
    )


@router.get("/sessions")
async def list_active_sessions(
    current_user: User = Depends(require_coordinator),
    registry: ExamSessionRegistry = Depends(get_exam_session_registry),
):
    return registry.list_active_sessions()


@router.post("/sessions/{session_id}/deactivate")
async def deactivate_session(
    session_id: int,
    current_user: User = Depends(require_coordinator),
    registry: ExamSessionRegistry = Depends(get_exam_session_registry),
):
    # Idempotent: a second call reports changed=False
    changed = registry.deactivate(session_id, deactivated_by=current_user.id)
    return {"ok": True, "changed": changed}


@router.post("/attempts/{attempt_id}/regrade")
async def regrade_attempt(
    attempt_id: int,
    current_user: User = Depends(require_coordinator),
    grading_service: GradingService = Depends(get_grading_service),
):
    return operation_response(grading_service.regrade_attempt(attempt_id, current_user.id))


@router.get("/audit-logs")
async def audit_logs(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    event_type: Optional[str] = Query(None),
    user_id: Optional[int] = Query(None),
    current_user: User = Depends(require_coordinator),
    audit_service: AuditService = Depends(get_audit_service),
):
    start, end = _naive_utc(start), _naive_utc(end)
    if start and end and end < start:
        raise_for_kind(ErrorKind.INVALID_FORMAT, "end must not be before start")
    if user_id is not None:
        return audit_service.get_user_audit_logs(user_id, start, end)
    return audit_service.get_audit_logs(start, end, event_type)

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from hems.api.dependencies import client_info, get_db, operation_response, raise_for_kind
from hems.api.security import require_exam_access
from hems.core.models import StudentExam
from hems.core.services.auth import AuthContext
from hems.core.services.exam_service import ExamService, get_exam_service
from hems.core.services.timer_service import TimerService, get_timer_service

router = APIRouter(prefix="/api", tags=["exam"])

# --- Pydantic Models ---


class AnswerSave(BaseModel):
    question_id: int
    choice_id: Optional[int] = None


class FlagToggle(BaseModel):
    question_id: int
    flagged: bool


class TimestampCheck(BaseModel):
    server_time: datetime
    hash: str


def _require_owner(db: Session, attempt_id: int, context: AuthContext) -> StudentExam:
    attempt = db.get(StudentExam, attempt_id)
    if attempt is None:
        raise HTTPException(status_code=404, detail="Exam attempt not found")
    if attempt.student.user_id != context.user.id:
        raise HTTPException(status_code=403, detail="Not authorized")
    return attempt


@router.get("/exams")
async def available_exams(
    context: AuthContext = Depends(require_exam_access),
    exam_service: ExamService = Depends(get_exam_service),
):
    """The exam of the session this student logged in to"""
    return exam_service.get_available_exams(context.exam_session_id)


@router.post("/exams/{exam_id}/start")
async def start_exam(
    exam_id: int,
    context: AuthContext = Depends(require_exam_access),
    exam_service: ExamService = Depends(get_exam_service),
):
    student = context.user.student
    if student is None:
        raise HTTPException(status_code=403, detail="Student record not found")
    result = exam_service.start_attempt(student.id, exam_id, context.exam_session_id)
    return operation_response(result)


@router.get("/attempts/{attempt_id}")
async def get_attempt(
    attempt_id: int,
    context: AuthContext = Depends(require_exam_access),
    exam_service: ExamService = Depends(get_exam_service),
):
    return operation_response(exam_service.get_attempt_for_user(attempt_id, context.user.id))


@router.get("/attempts/{attempt_id}/remaining-time")
async def remaining_time(
    attempt_id: int,
    context: AuthContext = Depends(require_exam_access),
    exam_service: ExamService = Depends(get_exam_service),
):
    result = exam_service.get_remaining_time(attempt_id, context.user.id)
    if not result.ok:
        raise_for_kind(result.error_kind, result.message)
    return result.data


@router.get("/attempts/{attempt_id}/timestamp")
async def secure_timestamp(
    attempt_id: int,
    context: AuthContext = Depends(require_exam_access),
    db: Session = Depends(get_db),
    timer_service: TimerService = Depends(get_timer_service),
):
    _require_owner(db, attempt_id, context)
    return timer_service.get_secure_timestamp(attempt_id).to_dict()


@router.post("/attempts/{attempt_id}/timestamp/verify")
async def verify_timestamp(
    attempt_id: int,
    payload: TimestampCheck,
    request: Request,
    context: AuthContext = Depends(require_exam_access),
    db: Session = Depends(get_db),
    timer_service: TimerService = Depends(get_timer_service),
):
    _require_owner(db, attempt_id, context)
    ip_address, _ = client_info(request)
    server_time = payload.server_time
    if server_time.tzinfo is not None:
        server_time = server_time.replace(tzinfo=None)
    valid = timer_service.validate_timestamp(
        attempt_id, server_time, payload.hash, context.user.id, ip_address
    )
    return {"valid": valid}


@router.post("/attempts/{attempt_id}/answers")
async def save_answer(
    attempt_id: int,
    payload: AnswerSave,
    context: AuthContext = Depends(require_exam_access),
    exam_service: ExamService = Depends(get_exam_service),
):
    result = exam_service.save_answer(
        attempt_id, payload.question_id, payload.choice_id, context.user.id
    )
    return operation_response(result)


@router.post("/attempts/{attempt_id}/flags")
async def toggle_flag(
    attempt_id: int,
    payload: FlagToggle,
    context: AuthContext = Depends(require_exam_access),
    exam_service: ExamService = Depends(get_exam_service),
):
    result = exam_service.toggle_flag(
        attempt_id, payload.question_id, payload.flagged, context.user.id
    )
    return operation_response(result)


@router.post("/attempts/{attempt_id}/submit")
async def submit_attempt(
    attempt_id: int,
    context: AuthContext = Depends(require_exam_access),
    exam_service: ExamService = Depends(get_exam_service),
):
    return operation_response(exam_service.submit(attempt_id, context.user.id))


@router.get("/attempts/{attempt_id}/result")
async def attempt_result(
    attempt_id: int,
    context: AuthContext = Depends(require_exam_access),
    exam_service: ExamService = Depends(get_exam_service),
):
    return operation_response(exam_service.get_result(attempt_id, context.user.id))

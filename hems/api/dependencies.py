from typing import NoReturn, Optional, Tuple

from fastapi import HTTPException, Request, status

from hems.core.results import ErrorKind, ExamOperationResult, public_kind, public_message
from hems.core.services.database import get_db_service as _get_db_service

# Business failure -> HTTP status
STATUS_BY_KIND = {
    ErrorKind.INVALID_FORMAT: status.HTTP_400_BAD_REQUEST,
    ErrorKind.CONFIRMATION_MISMATCH: status.HTTP_400_BAD_REQUEST,
    ErrorKind.WEAK_PASSWORD: status.HTTP_400_BAD_REQUEST,
    ErrorKind.INVALID_QUESTION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.USER_NOT_FOUND: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.INCORRECT_PASSWORD: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.INCORRECT_EXAM_PASSWORD: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.ACCOUNT_LOCKED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.PHASE1_ALREADY_COMPLETED: status.HTTP_403_FORBIDDEN,
    ErrorKind.PHASE1_NOT_COMPLETED: status.HTTP_403_FORBIDDEN,
    ErrorKind.STUDENT_RECORD_NOT_FOUND: status.HTTP_403_FORBIDDEN,
    ErrorKind.UNAUTHORIZED_ACCESS: status.HTTP_403_FORBIDDEN,
    ErrorKind.EXAM_NOT_PUBLISHED: status.HTTP_403_FORBIDDEN,
    ErrorKind.EXAM_SESSION_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.EXAM_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.ATTEMPT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.ALREADY_SUBMITTED: status.HTTP_409_CONFLICT,
    ErrorKind.ATTEMPT_NOT_SUBMITTED: status.HTTP_409_CONFLICT,
    ErrorKind.SESSION_TIMEOUT: status.HTTP_410_GONE,
    ErrorKind.SYSTEM_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def get_db_service():
    # Delegate to the core database singleton so tests and the API share the
    # same DatabaseService instance regardless of import path.
    return _get_db_service()


def get_db():
    service = get_db_service()
    session = service.get_session()
    try:
        yield session
    finally:
        session.close()


def client_info(request: Request) -> Tuple[Optional[str], Optional[str]]:
    """Caller IP address and user agent for the audit trail"""
    ip_address = request.client.host if request.client else None
    return ip_address, request.headers.get("user-agent")


def raise_for_kind(kind: ErrorKind, message: Optional[str] = None, **extra) -> NoReturn:
    """Raise the HTTPException for a business failure.

    Enumeration-sensitive kinds are collapsed first so the response never
    reveals whether an account exists.
    """
    exposed = public_kind(kind)
    if exposed != kind or message is None:
        message = public_message(exposed)
    detail = {"error_kind": exposed.value, "message": message, **extra}
    headers = {"WWW-Authenticate": "Bearer"} if STATUS_BY_KIND[exposed] == 401 else None
    raise HTTPException(status_code=STATUS_BY_KIND[exposed], detail=detail, headers=headers)


def operation_response(result: ExamOperationResult) -> dict:
    """Response body for an exam operation, or the matching HTTPException"""
    if not result.ok:
        extra = {"attempt_id": result.attempt_id}
        if result.result is not None:
            extra["result"] = result.result.to_dict()
        raise_for_kind(result.error_kind, result.message, **extra)
    return {
        "ok": True,
        "message": result.message,
        "attempt_id": result.attempt_id,
        "auto_submitted": result.auto_submitted,
        "result": result.result.to_dict() if result.result else None,
        **result.data,
    }

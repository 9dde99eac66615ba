from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import BaseModel, Field

from hems.api.dependencies import client_info, raise_for_kind
from hems.api.security import get_auth_context, get_current_user, user_role_str
from hems.core.models import User
from hems.core.results import AuthenticationResult, ErrorKind
from hems.core.services.auth import AuthContext, AuthService, get_auth_service

# Models


class Phase2Login(BaseModel):
    id_number: str = Field(..., pattern=r"^[A-Za-z0-9]{3,20}$")
    password: str = Field(..., min_length=1, max_length=50)


class PasswordChange(BaseModel):
    new_password: str
    confirm_password: str


class LoginResponse(BaseModel):
    access_token: str
    token_type: str
    phase: int
    message: str
    continue_to_phase2: bool = False
    requires_password_change: bool = False
    exam_session_id: Optional[int] = None
    exam_id: Optional[int] = None
    user: dict


class UserResponse(BaseModel):
    id: int
    username: str
    role: str
    full_name: str
    auth_state: str
    phase: int
    exam_session_id: Optional[int] = None
    exam_id: Optional[int] = None
    must_change_password: bool
    id_number: Optional[str] = None


router = APIRouter(prefix="/api/auth", tags=["auth"])


def _login_response(result: AuthenticationResult) -> dict:
    if not result.ok:
        extra = {}
        if result.error_kind == ErrorKind.ACCOUNT_LOCKED:
            extra["lockout_remaining_seconds"] = result.lockout_remaining_seconds
        raise_for_kind(result.error_kind, result.message, **extra)
    return {
        "access_token": result.access_token,
        "token_type": "bearer",
        "phase": result.phase,
        "message": result.message,
        "continue_to_phase2": result.continue_to_phase2,
        "requires_password_change": result.requires_password_change,
        "exam_session_id": result.exam_session_id,
        "exam_id": result.exam_id,
        "user": {
            "id": result.user_id,
            "display_name": result.display_name,
            "role": result.role,
        },
    }


@router.post("/phase1", response_model=LoginResponse)
async def phase1_login(
    request: Request,
    form_data: OAuth2PasswordRequestForm = Depends(),
    auth_service: AuthService = Depends(get_auth_service),
):
    # Compatible with OAuth2 standard form data; username is the university email
    ip_address, user_agent = client_info(request)
    result = auth_service.validate_phase1(
        form_data.username, form_data.password, ip_address, user_agent
    )
    return _login_response(result)


@router.post("/phase2", response_model=LoginResponse)
async def phase2_login(
    payload: Phase2Login,
    request: Request,
    auth_service: AuthService = Depends(get_auth_service),
):
    ip_address, user_agent = client_info(request)
    result = auth_service.validate_phase2(
        payload.id_number, payload.password, ip_address, user_agent
    )
    return _login_response(result)


@router.post("/change-password")
async def change_password(
    payload: PasswordChange,
    current_user: User = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
):
    result = auth_service.change_password(
        current_user.id, payload.new_password, payload.confirm_password
    )
    if not result.ok:
        raise_for_kind(
            result.error_kind,
            result.message,
            weak_reason=result.weak_reason.value if result.weak_reason else None,
            violations=result.violations,
        )
    return {"ok": True, "message": result.message}


@router.post("/logout")
async def logout(
    request: Request,
    current_user: User = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
):
    ip_address, _ = client_info(request)
    closed = auth_service.logout(current_user.id, ip_address)
    return {"ok": True, "sessions_closed": closed}


@router.get("/me", response_model=UserResponse)
async def read_users_me(context: AuthContext = Depends(get_auth_context)):
    user = context.user
    return {
        "id": user.id,
        "username": user.username,
        "role": user_role_str(user),
        "full_name": user.full_name,
        "auth_state": user.auth_state.value,
        "phase": context.phase,
        "exam_session_id": context.exam_session_id,
        "exam_id": context.exam_id,
        "must_change_password": user.must_change_password,
        "id_number": user.student.id_number if user.student else None,
    }

"""
FastAPI authentication + authorization helpers.

This centralizes:
- Token -> auth context / current user dependency
- Role normalization at the API boundary
- Role and login-phase route guards (dependencies)
"""

from __future__ import annotations

from typing import Union

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from hems.core.models import AuthState, User, UserRole
from hems.core.roles import has_role, parse_user_role, role_str
from hems.core.services.auth import AuthContext, AuthService, get_auth_service

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/phase1")


def _ensure_user_role_enum(user: User) -> None:
    """Coerce ``User.role`` to ``UserRole`` so route code can compare enums."""
    role_enum = parse_user_role(getattr(user, "role", None))
    if role_enum is not None and getattr(user, "role", None) != role_enum:
        user.role = role_enum


def get_auth_context(
    token: str = Depends(oauth2_scheme),
    auth_service: AuthService = Depends(get_auth_service),
) -> AuthContext:
    context = auth_service.validate_token(token)
    if context is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    _ensure_user_role_enum(context.user)
    return context


def get_current_user(context: AuthContext = Depends(get_auth_context)) -> User:
    return context.user


RoleInput = Union[UserRole, str]


def require_roles(*roles: RoleInput):
    """
    Dependency factory that enforces role membership and returns ``current_user``.

    Usage:
        current_user: User = Depends(require_roles(UserRole.COORDINATOR))
    """

    def _dep(current_user: User = Depends(get_current_user)) -> User:
        if not has_role(current_user, *roles):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized"
            )
        return current_user

    return _dep


def require_coordinator(
    current_user: User = Depends(require_roles(UserRole.COORDINATOR)),
) -> User:
    if current_user.must_change_password:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Password change required",
        )
    return current_user


def require_exam_access(context: AuthContext = Depends(get_auth_context)) -> AuthContext:
    """Student admitted through Phase 2 with no pending forced password change."""
    user = context.user
    if not has_role(user, UserRole.STUDENT):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized")
    if context.phase != 2 or user.auth_state not in (AuthState.PHASE2, AuthState.SUBMITTED):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Phase 2 exam login required",
        )
    if user.must_change_password:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Password change required before starting the exam",
        )
    return context


def user_role_str(user: User) -> str:
    """Canonical role string for API responses."""
    return role_str(user)

"""
Authentication endpoints: login, token refresh, logout and the caller's profile.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ...core.auth import UserContext, client_ip, get_current_user
from ...core.db import get_db
from ...schemas.auth import ChangePasswordIn, LoginIn, LogoutIn, RefreshIn
from ...schemas.common import ok
from ...services.authenticator import Authenticator
from ...services.users import get_user
from ..deps import get_authenticator
from .users import user_out


router = APIRouter(prefix="/rbac/auth", tags=["auth"])


@router.post("/login")
def login(
    payload: LoginIn,
    request: Request,
    db: Session = Depends(get_db),
    authenticator: Authenticator = Depends(get_authenticator),
) -> dict:
    pair = authenticator.login(
        db,
        payload.identifier,
        payload.password,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return ok({"user": user_out(pair.user).dump(), "tokens": pair.tokens()})


@router.post("/refresh")
def refresh(
    payload: RefreshIn,
    request: Request,
    db: Session = Depends(get_db),
    authenticator: Authenticator = Depends(get_authenticator),
) -> dict:
    pair = authenticator.refresh(
        db,
        payload.refresh_token,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return ok({"tokens": pair.tokens()})


@router.post("/logout")
def logout(
    payload: LogoutIn | None = None,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
    authenticator: Authenticator = Depends(get_authenticator),
) -> dict:
    refresh_token = payload.refresh_token if payload else None
    authenticator.logout(
        db,
        session_id=None if refresh_token else user.session_id,
        refresh_token=refresh_token,
        ip_address=user.ip_address,
        user_agent=user.user_agent,
    )
    return ok({"message": "Logged out successfully"})


@router.post("/logout-all")
def logout_all(
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
    authenticator: Authenticator = Depends(get_authenticator),
) -> dict:
    count = authenticator.logout_all(db, user.user_id, ip_address=user.ip_address, user_agent=user.user_agent)
    return ok({"message": "Logged out from all sessions", "revoked": count})


@router.get("/me")
def me(
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> dict:
    return ok({"user": user_out(get_user(db, user.user_id)).dump()})


@router.post("/change-password")
def change_password(
    payload: ChangePasswordIn,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
    authenticator: Authenticator = Depends(get_authenticator),
) -> dict:
    authenticator.change_password(
        db,
        user.user_id,
        payload.current_password,
        payload.new_password,
        ip_address=user.ip_address,
        user_agent=user.user_agent,
    )
    return ok({"message": "Password changed successfully. Please login again."})


@router.get("/validate")
def validate(user: UserContext = Depends(get_current_user)) -> dict:
    return ok(
        {
            "valid": True,
            "userId": user.user_id,
            "username": user.username,
            "roles": user.roles,
            "permissions": sorted(user.permissions),
        }
    )

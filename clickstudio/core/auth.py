"""
Request authentication and permission gates for RBAC routes.

``get_current_user`` turns the bearer token into a ``UserContext`` (401 on
any failure); the ``require_*`` factories build dependencies that check
the resolved permission set (403 when the identity is valid but lacks the
permission).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from .db import get_db
from .errors import AuthError, PermissionDenied
from .security import extract_bearer_token

if TYPE_CHECKING:
    from ..services.permissions import Permission


@dataclass
class UserContext:
    user_id: str
    email: str
    username: str
    session_id: str
    display_name: Optional[str] = None
    roles: list[str] = field(default_factory=list)
    permissions: frozenset[str] = frozenset()
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        from ..services.permissions import ADMIN_ROLE_NAMES

        return any(role in ADMIN_ROLE_NAMES for role in self.roles)

    def has_permission(self, permission: "Permission") -> bool:
        return permission.value in self.permissions


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",", 1)[0].strip() or None
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip() or None
    return request.client.host if request.client else None


def get_current_user(
    request: Request,
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> UserContext:
    token = extract_bearer_token(authorization)
    if not token:
        raise AuthError(AuthError.TOKEN_MISSING)
    authenticator = request.app.state.authenticator
    user = authenticator.authenticate(db, token)
    user.ip_address = client_ip(request)
    user.user_agent = request.headers.get("user-agent")
    return user


def get_optional_user(
    request: Request,
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> Optional[UserContext]:
    if not authorization:
        return None
    return get_current_user(request, authorization=authorization, db=db)


def require_permission(permission: "Permission"):
    def _dep(user: UserContext = Depends(get_current_user)) -> UserContext:
        if not user.has_permission(permission):
            raise PermissionDenied(f"Permission '{permission.value}' required")
        return user

    return _dep


def require_any_permission(*permissions: "Permission"):
    def _dep(user: UserContext = Depends(get_current_user)) -> UserContext:
        if not any(user.has_permission(p) for p in permissions):
            names = ", ".join(p.value for p in permissions)
            raise PermissionDenied(f"One of the following permissions required: {names}")
        return user

    return _dep


def require_all_permissions(*permissions: "Permission"):
    def _dep(user: UserContext = Depends(get_current_user)) -> UserContext:
        missing = [p.value for p in permissions if not user.has_permission(p)]
        if missing:
            raise PermissionDenied(f"Missing permissions: {', '.join(missing)}")
        return user

    return _dep


def require_roles(*roles: str):
    def _dep(user: UserContext = Depends(get_current_user)) -> UserContext:
        allowed = {r.strip().lower() for r in roles if r and r.strip()}
        if allowed and not allowed.intersection(user.roles):
            raise PermissionDenied("Forbidden")
        return user

    return _dep

"""
User management endpoints.

Users without ``users:view`` may only read their own profile.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from ...core.auth import UserContext, get_current_user, require_permission
from ...core.db import get_db
from ...core.errors import PermissionDenied
from ...core.pagination import Page, page_params, set_pagination_headers
from ...core.security import generate_secure_password
from ...models import User
from ...schemas.common import ok
from ...schemas.users import AssignRolesIn, ResetPasswordIn, UserCreate, UserOut, UserUpdate
from ...services import users as user_service
from ...services.audit import AuditAction, AuditLogger
from ...services.permissions import Permission
from ..deps import get_audit


router = APIRouter(prefix="/rbac/users", tags=["users"])


def user_out(user: User) -> UserOut:
    return UserOut(
        id=user.id,
        email=user.email,
        username=user.username,
        display_name=user.display_name,
        avatar_url=user.avatar_url,
        is_active=user.is_active,
        is_system_user=user.is_system_user,
        roles=user_service.user_role_names(user),
        permissions=user_service.user_permissions(user),
        last_login_at=user.last_login_at,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


def _resolve_password(password: str | None, generate: bool) -> tuple[str, str | None]:
    if generate or not password:
        generated = generate_secure_password(16)
        return generated, generated
    user_service.ensure_password_strength(password)
    return password, None


@router.get("")
def list_users(
    response: Response,
    page: Page = Depends(page_params(20)),
    search: str | None = Query(None),
    role_id: str | None = Query(None, alias="roleId"),
    is_active: bool | None = Query(None, alias="isActive"),
    db: Session = Depends(get_db),
    _user: UserContext = Depends(require_permission(Permission.USERS_VIEW)),
) -> dict:
    users, total = user_service.list_users(
        db, page=page.number, limit=page.limit, search=search, role_id=role_id, is_active=is_active
    )
    set_pagination_headers(response, total=total, page=page)
    return ok({"users": [user_out(u).dump() for u in users], **page.meta(total)})


@router.get("/{user_id}")
def get_user(
    user_id: str,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> dict:
    if not user.has_permission(Permission.USERS_VIEW) and user_id != user.user_id:
        raise PermissionDenied(f"Permission '{Permission.USERS_VIEW.value}' required to view other users' profiles")
    return ok({"user": user_out(user_service.get_user(db, user_id)).dump()})


@router.post("", status_code=201)
def create_user(
    payload: UserCreate,
    db: Session = Depends(get_db),
    user: UserContext = Depends(require_permission(Permission.USERS_CREATE)),
    audit: AuditLogger = Depends(get_audit),
) -> dict:
    password, generated = _resolve_password(payload.password, payload.generate_password)
    created = user_service.create_user(
        db,
        email=payload.email,
        username=payload.username,
        password=password,
        display_name=payload.display_name,
        role_ids=payload.role_ids,
        created_by=user.user_id,
    )
    out = user_out(created)
    audit.record(
        AuditAction.USER_CREATE,
        user_id=user.user_id,
        resource_type="user",
        resource_id=created.id,
        details={"email": created.email, "username": created.username, "roles": out.roles},
        ip_address=user.ip_address,
        user_agent=user.user_agent,
    )
    return ok({"user": out.dump(), "generatedPassword": generated})


@router.api_route("/{user_id}", methods=["PATCH", "PUT"])
def update_user(
    user_id: str,
    payload: UserUpdate,
    db: Session = Depends(get_db),
    user: UserContext = Depends(require_permission(Permission.USERS_UPDATE)),
    audit: AuditLogger = Depends(get_audit),
) -> dict:
    target = user_service.get_user(db, user_id)
    changes = payload.model_dump(exclude_unset=True)
    updated = user_service.update_user(db, target, changes, actor=user)
    audit.record(
        AuditAction.USER_UPDATE,
        user_id=user.user_id,
        resource_type="user",
        resource_id=user_id,
        details={"changes": payload.model_dump(mode="json", by_alias=True, exclude_unset=True)},
        ip_address=user.ip_address,
        user_agent=user.user_agent,
    )
    return ok({"user": user_out(updated).dump()})


@router.delete("/{user_id}")
def delete_user(
    user_id: str,
    db: Session = Depends(get_db),
    user: UserContext = Depends(require_permission(Permission.USERS_DELETE)),
    audit: AuditLogger = Depends(get_audit),
) -> dict:
    target = user_service.get_user(db, user_id)
    snapshot = user_service.delete_user(db, target, actor=user)
    audit.record(
        AuditAction.USER_DELETE,
        user_id=user.user_id,
        resource_type="user",
        resource_id=user_id,
        details=snapshot,
        ip_address=user.ip_address,
        user_agent=user.user_agent,
    )
    return ok({"message": "User deleted successfully"})


@router.post("/{user_id}/reset-password")
def reset_password(
    user_id: str,
    payload: ResetPasswordIn,
    db: Session = Depends(get_db),
    user: UserContext = Depends(require_permission(Permission.USERS_UPDATE)),
    audit: AuditLogger = Depends(get_audit),
) -> dict:
    target = user_service.get_user(db, user_id)
    password, generated = _resolve_password(payload.new_password, payload.generate_password)
    user_service.reset_password(db, target, password, actor=user)
    audit.record(
        AuditAction.PASSWORD_CHANGE,
        user_id=user.user_id,
        resource_type="user",
        resource_id=user_id,
        details={"adminReset": True},
        ip_address=user.ip_address,
        user_agent=user.user_agent,
    )
    return ok({"message": "Password reset successfully", "generatedPassword": generated})


@router.post("/{user_id}/assign-roles")
def assign_roles(
    user_id: str,
    payload: AssignRolesIn,
    db: Session = Depends(get_db),
    user: UserContext = Depends(require_permission(Permission.ROLES_ASSIGN)),
    audit: AuditLogger = Depends(get_audit),
) -> dict:
    target = user_service.get_user(db, user_id)
    updated = user_service.assign_roles(db, target, payload.role_ids, actor=user)
    audit.record(
        AuditAction.USER_ROLE_ASSIGN,
        user_id=user.user_id,
        resource_type="user",
        resource_id=user_id,
        details={"roleIds": payload.role_ids},
        ip_address=user.ip_address,
        user_agent=user.user_agent,
    )
    return ok({"user": user_out(updated).dump()})

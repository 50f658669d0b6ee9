"""
Role management endpoints and the permission catalog.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...core.auth import UserContext, require_permission
from ...core.db import get_db
from ...models import Role
from ...schemas.common import ok
from ...schemas.roles import RoleCreate, RoleOut, RoleUpdate
from ...services import roles as role_service
from ...services.audit import AuditAction, AuditLogger
from ...services.permissions import Permission, permissions_by_category
from ..deps import get_audit


router = APIRouter(prefix="/rbac/roles", tags=["roles"])


def role_out(role: Role, user_count: int = 0) -> RoleOut:
    return RoleOut(
        id=role.id,
        name=role.name,
        display_name=role.display_name,
        description=role.description,
        is_system=role.is_system,
        is_default=role.is_default,
        priority=role.priority,
        permissions=sorted(role.permissions),
        user_count=user_count,
        created_at=role.created_at,
        updated_at=role.updated_at,
    )


@router.get("")
def list_roles(
    db: Session = Depends(get_db),
    _user: UserContext = Depends(require_permission(Permission.ROLES_VIEW)),
) -> dict:
    counts = role_service.user_counts(db)
    roles = role_service.list_roles(db)
    return ok({"roles": [role_out(r, counts.get(r.id, 0)).dump() for r in roles]})


@router.get("/permissions")
def list_permissions(_user: UserContext = Depends(require_permission(Permission.ROLES_VIEW))) -> dict:
    return ok({"permissions": [{"name": p.value, "category": p.category} for p in Permission]})


@router.get("/permissions/by-category")
def list_permissions_by_category(_user: UserContext = Depends(require_permission(Permission.ROLES_VIEW))) -> dict:
    return ok({"permissions": permissions_by_category()})


@router.get("/{role_id}")
def get_role(
    role_id: str,
    db: Session = Depends(get_db),
    _user: UserContext = Depends(require_permission(Permission.ROLES_VIEW)),
) -> dict:
    role = role_service.get_role(db, role_id)
    return ok({"role": role_out(role, role_service.user_counts(db).get(role.id, 0)).dump()})


@router.post("", status_code=201)
def create_role(
    payload: RoleCreate,
    db: Session = Depends(get_db),
    user: UserContext = Depends(require_permission(Permission.ROLES_CREATE)),
    audit: AuditLogger = Depends(get_audit),
) -> dict:
    role = role_service.create_role(
        db,
        name=payload.name,
        display_name=payload.display_name,
        description=payload.description,
        permissions=payload.permissions,
        is_default=payload.is_default,
    )
    audit.record(
        AuditAction.ROLE_CREATE,
        user_id=user.user_id,
        resource_type="role",
        resource_id=role.id,
        details={"name": role.name, "permissions": sorted(role.permissions)},
        ip_address=user.ip_address,
        user_agent=user.user_agent,
    )
    return ok({"role": role_out(role).dump()})


@router.api_route("/{role_id}", methods=["PATCH", "PUT"])
def update_role(
    role_id: str,
    payload: RoleUpdate,
    db: Session = Depends(get_db),
    user: UserContext = Depends(require_permission(Permission.ROLES_UPDATE)),
    audit: AuditLogger = Depends(get_audit),
) -> dict:
    role = role_service.get_role(db, role_id)
    updated = role_service.update_role(db, role, payload.model_dump(exclude_unset=True))
    audit.record(
        AuditAction.ROLE_UPDATE,
        user_id=user.user_id,
        resource_type="role",
        resource_id=role_id,
        details={"changes": payload.model_dump(mode="json", by_alias=True, exclude_unset=True)},
        ip_address=user.ip_address,
        user_agent=user.user_agent,
    )
    return ok({"role": role_out(updated, role_service.user_counts(db).get(updated.id, 0)).dump()})


@router.delete("/{role_id}")
def delete_role(
    role_id: str,
    db: Session = Depends(get_db),
    user: UserContext = Depends(require_permission(Permission.ROLES_DELETE)),
    audit: AuditLogger = Depends(get_audit),
) -> dict:
    role = role_service.get_role(db, role_id)
    name = role.name
    role_service.delete_role(db, role)
    audit.record(
        AuditAction.ROLE_DELETE,
        user_id=user.user_id,
        resource_type="role",
        resource_id=role_id,
        details={"name": name},
        ip_address=user.ip_address,
        user_agent=user.user_agent,
    )
    return ok({"message": "Role deleted successfully"})

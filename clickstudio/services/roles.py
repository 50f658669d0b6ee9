"""
Role management. System roles are read-only; custom roles are fully editable.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..core.errors import AppError, PermissionDenied
from ..models import Role, RolePermission, UserRole, utcnow
from .permissions import CUSTOM_ROLE_PRIORITY, validate_permission_names

logger = logging.getLogger("roles")

_WS_RE = re.compile(r"\s+")


def normalize_role_name(name: str) -> str:
    return _WS_RE.sub("_", name.strip().lower())


def _parse_permissions(names: list[str]) -> list[str]:
    try:
        return sorted({p.value for p in validate_permission_names(names)})
    except ValueError as exc:
        raise AppError.bad_request(str(exc)) from exc


def _guard_system(role: Role, verb: str) -> None:
    if role.is_system:
        raise PermissionDenied(f"Cannot {verb} system role", code="SYSTEM_ROLE_IMMUTABLE")


def _clear_default(db: Session, *, except_id: Optional[str] = None) -> None:
    query = db.query(Role).filter(Role.is_default.is_(True))
    if except_id:
        query = query.filter(Role.id != except_id)
    query.update({Role.is_default: False, Role.updated_at: utcnow()}, synchronize_session="fetch")


def user_counts(db: Session) -> dict[str, int]:
    rows = db.query(UserRole.role_id, func.count(UserRole.id)).group_by(UserRole.role_id).all()
    return {role_id: count for role_id, count in rows}


def list_roles(db: Session) -> list[Role]:
    return db.query(Role).order_by(Role.priority.desc(), Role.name.asc()).all()


def get_role(db: Session, role_id: str) -> Role:
    role = db.get(Role, role_id)
    if role is None:
        raise AppError.not_found("Role not found")
    return role


def create_role(
    db: Session,
    *,
    name: str,
    display_name: str,
    description: Optional[str] = None,
    permissions: list[str],
    is_default: bool = False,
) -> Role:
    normalized = normalize_role_name(name)
    if not normalized:
        raise AppError.bad_request("Role name is required")
    perms = _parse_permissions(permissions)
    if db.query(Role.id).filter(Role.name == normalized).first() is not None:
        raise AppError.conflict(f"Role '{normalized}' already exists")
    if is_default:
        _clear_default(db)
    role = Role(
        name=normalized,
        display_name=display_name,
        description=description,
        is_system=False,
        is_default=is_default,
        priority=CUSTOM_ROLE_PRIORITY,
    )
    role.permission_links = [RolePermission(permission=p) for p in perms]
    db.add(role)
    db.commit()
    db.refresh(role)
    logger.info("Created role name=%s permissions=%d", role.name, len(perms))
    return role


def update_role(db: Session, role: Role, changes: dict[str, Any]) -> Role:
    _guard_system(role, "modify")
    if changes.get("display_name") is not None:
        role.display_name = changes["display_name"]
    if "description" in changes:
        role.description = changes["description"]
    if changes.get("is_default") is True:
        _clear_default(db, except_id=role.id)
        role.is_default = True
    elif changes.get("is_default") is False:
        role.is_default = False
    if changes.get("permissions") is not None:
        wanted = set(_parse_permissions(list(changes["permissions"])))
        for link in list(role.permission_links):
            if link.permission not in wanted:
                role.permission_links.remove(link)
        existing = role.permissions
        for perm in sorted(wanted - existing):
            role.permission_links.append(RolePermission(permission=perm))
    role.updated_at = utcnow()
    db.commit()
    db.refresh(role)
    return role


def delete_role(db: Session, role: Role) -> None:
    _guard_system(role, "delete")
    db.delete(role)
    db.commit()
    logger.info("Deleted role name=%s", role.name)

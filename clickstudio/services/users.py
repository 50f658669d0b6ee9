"""
User management: create, update, hard delete, password resets and role assignment.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.auth import UserContext
from ..core.errors import AppError, PermissionDenied
from ..core.pagination import Page, paginate
from ..core.security import hash_password, validate_password_strength
from ..models import Role, User, UserRole, utcnow
from .permissions import SystemRole

logger = logging.getLogger("users")

SUPER_ADMIN = SystemRole.SUPER_ADMIN.value


def ensure_password_strength(password: str) -> None:
    strength = validate_password_strength(password)
    if not strength["valid"]:
        raise AppError.bad_request("Password does not meet requirements", {"errors": strength["errors"]})


def user_role_names(user: User) -> list[str]:
    roles = sorted(user.roles, key=lambda r: (-r.priority, r.name))
    return [role.name for role in roles]


def user_permissions(user: User) -> list[str]:
    perms: set[str] = set()
    for role in user.roles:
        perms.update(role.permissions)
    return sorted(perms)


def _guard_super_admin(target: User, actor: UserContext, message: str) -> None:
    if SUPER_ADMIN in user_role_names(target) and SUPER_ADMIN not in actor.roles:
        raise PermissionDenied(message)


def _check_unique(db: Session, *, email: str | None, username: str | None, exclude_id: str | None = None) -> None:
    clauses = []
    if email:
        clauses.append(func.lower(User.email) == email)
    if username:
        clauses.append(func.lower(User.username) == username)
    if not clauses:
        return
    query = db.query(User.id).filter(or_(*clauses))
    if exclude_id:
        query = query.filter(User.id != exclude_id)
    if query.first() is not None:
        raise AppError.conflict("Email or username already exists")


def _load_roles(db: Session, role_ids: list[str]) -> list[Role]:
    if not role_ids:
        return []
    roles = db.query(Role).filter(Role.id.in_(role_ids)).all()
    missing = sorted(set(role_ids) - {r.id for r in roles})
    if missing:
        raise AppError.bad_request("Unknown role id(s)", {"roleIds": missing})
    return roles


def get_user(db: Session, user_id: str) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise AppError.not_found("User not found")
    return user


def create_user(
    db: Session,
    *,
    email: str,
    username: str,
    password: str,
    display_name: Optional[str] = None,
    role_ids: Optional[list[str]] = None,
    created_by: Optional[str] = None,
) -> User:
    email = email.strip().lower()
    username = username.strip().lower()
    _check_unique(db, email=email, username=username)

    roles = _load_roles(db, list(role_ids or []))
    if not roles:
        default_role = db.query(Role).filter(Role.is_default.is_(True)).first()
        if default_role is not None:
            roles = [default_role]

    user = User(
        email=email,
        username=username,
        display_name=display_name or username,
        password_hash=hash_password(password),
        is_active=True,
        password_changed_at=utcnow(),
        created_by=created_by,
    )
    user.role_links = [UserRole(role_id=role.id, assigned_by=created_by) for role in roles]
    db.add(user)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise AppError.conflict("Email or username already exists") from exc
    db.refresh(user)
    logger.info("Created user id=%s username=%s roles=%s", user.id, user.username, [r.name for r in roles])
    return user


def list_users(
    db: Session,
    *,
    page: int = 1,
    limit: int = 20,
    search: Optional[str] = None,
    role_id: Optional[str] = None,
    is_active: Optional[bool] = None,
) -> tuple[list[User], int]:
    query = db.query(User)
    if search:
        needle = search.strip().lower()
        query = query.filter(
            or_(
                func.lower(User.email).contains(needle, autoescape=True),
                func.lower(User.username).contains(needle, autoescape=True),
                func.lower(User.display_name).contains(needle, autoescape=True),
            )
        )
    if role_id:
        query = query.join(UserRole, UserRole.user_id == User.id).filter(UserRole.role_id == role_id)
    if is_active is not None:
        query = query.filter(User.is_active.is_(is_active))
    return paginate(query.order_by(User.created_at.desc(), User.id.asc()), Page.of(page, limit))


def _replace_roles(db: Session, user: User, role_ids: list[str], assigned_by: Optional[str]) -> None:
    roles = _load_roles(db, role_ids)
    wanted = {r.id for r in roles}
    for link in list(user.role_links):
        if link.role_id not in wanted:
            user.role_links.remove(link)
    current = user.role_ids
    for role in roles:
        if role.id not in current:
            user.role_links.append(UserRole(role_id=role.id, assigned_by=assigned_by))


def update_user(db: Session, user: User, changes: dict[str, Any], *, actor: UserContext) -> User:
    _guard_super_admin(user, actor, "Cannot modify super administrator")
    if changes.get("is_active") is False and user.id == actor.user_id:
        raise AppError.bad_request("Cannot deactivate your own account")

    email = changes.get("email")
    username = changes.get("username")
    email = email.strip().lower() if email else None
    username = username.strip().lower() if username else None
    _check_unique(db, email=email, username=username, exclude_id=user.id)

    if email:
        user.email = email
    if username:
        user.username = username
    if "display_name" in changes:
        user.display_name = changes["display_name"]
    if "avatar_url" in changes:
        user.avatar_url = changes["avatar_url"]
    if changes.get("is_active") is not None:
        user.is_active = bool(changes["is_active"])
    if changes.get("role_ids") is not None:
        _replace_roles(db, user, list(changes["role_ids"]), actor.user_id)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise AppError.conflict("Email or username already exists") from exc
    db.refresh(user)
    return user


def assign_roles(db: Session, user: User, role_ids: list[str], *, actor: UserContext) -> User:
    _guard_super_admin(user, actor, "Cannot modify super administrator roles")
    _replace_roles(db, user, role_ids, actor.user_id)
    db.commit()
    db.refresh(user)
    return user


def reset_password(db: Session, user: User, new_password: str, *, actor: UserContext) -> None:
    _guard_super_admin(user, actor, "Cannot reset super administrator password")
    user.password_hash = hash_password(new_password)
    user.password_changed_at = utcnow()
    db.commit()


def delete_user(db: Session, user: User, *, actor: UserContext) -> dict[str, Any]:
    """Hard-delete the user; sessions, role links and access grants cascade."""
    if user.id == actor.user_id:
        raise AppError.bad_request("Cannot delete your own account")
    _guard_super_admin(user, actor, "Cannot delete super administrator")
    if user.is_system_user:
        raise AppError.bad_request("Cannot delete system user")
    snapshot = {"email": user.email, "username": user.username}
    db.delete(user)
    db.commit()
    logger.info("Deleted user id=%s username=%s", user.id, snapshot["username"])
    return snapshot

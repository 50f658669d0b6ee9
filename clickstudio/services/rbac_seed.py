"""
Bootstrap seed helpers for system roles and the initial super admin.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from ..core.config import Settings
from ..core.security import hash_password, validate_password_strength
from ..models import Role, RolePermission, User, UserRole, utcnow
from .permissions import DEFAULT_ROLE_PERMISSIONS, ROLE_HIERARCHY, SYSTEM_ROLE_DISPLAY, SystemRole


def seed_system_roles(db: Session) -> dict[str, Role]:
    """Create missing system roles and re-sync their permission sets to the templates."""
    logger = logging.getLogger("rbac-seed")
    roles: dict[str, Role] = {}
    for system_role in SystemRole:
        display_name, description = SYSTEM_ROLE_DISPLAY[system_role]
        wanted = {p.value for p in DEFAULT_ROLE_PERMISSIONS[system_role]}
        role = db.query(Role).filter(Role.name == system_role.value).first()
        if role is None:
            role = Role(
                name=system_role.value,
                display_name=display_name,
                description=description,
                is_system=True,
                is_default=False,
                priority=ROLE_HIERARCHY[system_role],
            )
            role.permission_links = [RolePermission(permission=p) for p in sorted(wanted)]
            db.add(role)
            logger.info("Seeded system role %s (%d permissions)", system_role.value, len(wanted))
        else:
            role.is_system = True
            role.priority = ROLE_HIERARCHY[system_role]
            current = role.permissions
            if current != wanted:
                for link in list(role.permission_links):
                    if link.permission not in wanted:
                        role.permission_links.remove(link)
                for perm in sorted(wanted - current):
                    role.permission_links.append(RolePermission(permission=perm))
                role.updated_at = utcnow()
                logger.info(
                    "Re-synced system role %s (+%d/-%d)",
                    system_role.value,
                    len(wanted - current),
                    len(current - wanted),
                )
        roles[system_role.value] = role
    db.commit()
    return roles


def seed_admin_user(db: Session, settings: Settings) -> User | None:
    logger = logging.getLogger("rbac-seed")
    email = (settings.rbac_admin_email or "").strip().lower()
    username = (settings.rbac_admin_username or "admin").strip().lower()
    password = (settings.rbac_admin_password or "").strip()

    if not username or not email:
        logger.warning("Skipping admin seed: empty RBAC_ADMIN_USERNAME or RBAC_ADMIN_EMAIL")
        return None
    if not password:
        logger.warning("Skipping admin seed: RBAC_ADMIN_PASSWORD is empty")
        return None
    if settings.is_prod and not validate_password_strength(password)["valid"]:
        raise RuntimeError("RBAC_ADMIN_PASSWORD does not meet password requirements.")

    super_admin = db.query(Role).filter(Role.name == SystemRole.SUPER_ADMIN.value).first()
    if super_admin is None:
        super_admin = seed_system_roles(db)[SystemRole.SUPER_ADMIN.value]

    existing = (
        db.query(User)
        .filter(or_(func.lower(User.username) == username, func.lower(User.email) == email))
        .first()
    )
    if existing:
        changed = False
        if super_admin.id not in existing.role_ids:
            existing.role_links.append(UserRole(role_id=super_admin.id))
            changed = True
        if not existing.is_active:
            existing.is_active = True
            changed = True
        if not existing.is_system_user:
            existing.is_system_user = True
            changed = True
        if changed:
            db.commit()
        return existing

    user = User(
        email=email,
        username=username,
        display_name="Administrator",
        password_hash=hash_password(password),
        is_active=True,
        is_system_user=True,
        password_changed_at=utcnow(),
    )
    user.role_links = [UserRole(role_id=super_admin.id)]
    db.add(user)
    db.commit()
    logger.info("Seeded admin user %s", username)
    return user

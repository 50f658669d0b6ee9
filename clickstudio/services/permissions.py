"""
Permission catalog, system role templates and permission checks.

Permissions are a closed ``Enum``: a misspelt name is an ``AttributeError``
at import time rather than a check that silently always denies. Checks are
exact set membership over the union of the user's role permission sets;
there is no hierarchy and no wildcard matching.
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models.role import Role, RolePermission
from ..models.user import UserRole


class Permission(str, Enum):
    # User Management
    USERS_VIEW = "users:view"
    USERS_CREATE = "users:create"
    USERS_UPDATE = "users:update"
    USERS_DELETE = "users:delete"

    # Role Management
    ROLES_VIEW = "roles:view"
    ROLES_CREATE = "roles:create"
    ROLES_UPDATE = "roles:update"
    ROLES_DELETE = "roles:delete"
    ROLES_ASSIGN = "roles:assign"

    # ClickHouse User Management
    CH_USERS_VIEW = "clickhouse:users:view"
    CH_USERS_CREATE = "clickhouse:users:create"
    CH_USERS_UPDATE = "clickhouse:users:update"
    CH_USERS_DELETE = "clickhouse:users:delete"

    # Database Operations
    DB_VIEW = "database:view"
    DB_CREATE = "database:create"
    DB_DROP = "database:drop"

    # Table Operations
    TABLE_VIEW = "table:view"
    TABLE_CREATE = "table:create"
    TABLE_ALTER = "table:alter"
    TABLE_DROP = "table:drop"
    TABLE_SELECT = "table:select"
    TABLE_INSERT = "table:insert"
    TABLE_UPDATE = "table:update"
    TABLE_DELETE = "table:delete"

    # Query Operations
    QUERY_EXECUTE = "query:execute"
    QUERY_EXECUTE_DDL = "query:execute:ddl"
    QUERY_EXECUTE_DML = "query:execute:dml"
    QUERY_EXECUTE_MISC = "query:execute:misc"
    QUERY_HISTORY_VIEW = "query:history:view"
    QUERY_HISTORY_VIEW_ALL = "query:history:view:all"

    # Saved Queries
    SAVED_QUERIES_VIEW = "saved_queries:view"
    SAVED_QUERIES_CREATE = "saved_queries:create"
    SAVED_QUERIES_UPDATE = "saved_queries:update"
    SAVED_QUERIES_DELETE = "saved_queries:delete"
    SAVED_QUERIES_SHARE = "saved_queries:share"

    # Metrics & Monitoring
    METRICS_VIEW = "metrics:view"
    METRICS_VIEW_ADVANCED = "metrics:view:advanced"

    # Settings
    SETTINGS_VIEW = "settings:view"
    SETTINGS_UPDATE = "settings:update"

    # Audit Logs
    AUDIT_VIEW = "audit:view"
    AUDIT_EXPORT = "audit:export"
    AUDIT_DELETE = "audit:delete"

    # Live Query Management
    LIVE_QUERIES_VIEW = "live_queries:view"
    LIVE_QUERIES_KILL = "live_queries:kill"
    LIVE_QUERIES_KILL_ALL = "live_queries:kill_all"

    # Connection Management
    CONNECTIONS_VIEW = "connections:view"
    CONNECTIONS_EDIT = "connections:edit"
    CONNECTIONS_DELETE = "connections:delete"

    # AI Features
    AI_OPTIMIZE = "ai:optimize"
    AI_CHAT = "ai:chat"

    # AI Models Management
    AI_MODELS_VIEW = "ai_models:view"
    AI_MODELS_CREATE = "ai_models:create"
    AI_MODELS_UPDATE = "ai_models:update"
    AI_MODELS_DELETE = "ai_models:delete"

    @property
    def category(self) -> str:
        return self.value.split(":", 1)[0]

    @classmethod
    def parse(cls, name: str) -> "Permission":
        """Look up a permission by its wire name, e.g. ``"audit:view"``."""
        return cls(name.strip())


class SystemRole(str, Enum):
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    DEVELOPER = "developer"
    ANALYST = "analyst"
    VIEWER = "viewer"
    GUEST = "guest"


ROLE_HIERARCHY: dict[SystemRole, int] = {
    SystemRole.SUPER_ADMIN: 100,
    SystemRole.ADMIN: 80,
    SystemRole.DEVELOPER: 60,
    SystemRole.ANALYST: 40,
    SystemRole.VIEWER: 20,
    SystemRole.GUEST: 10,
}

SYSTEM_ROLE_DISPLAY: dict[SystemRole, tuple[str, str]] = {
    SystemRole.SUPER_ADMIN: ("Super Admin", "Full system access including role and audit management"),
    SystemRole.ADMIN: ("Admin", "Manage users, databases and monitoring"),
    SystemRole.DEVELOPER: ("Developer", "Create and alter schema objects and run any query"),
    SystemRole.ANALYST: ("Analyst", "Query and modify data, no schema changes"),
    SystemRole.VIEWER: ("Viewer", "Read-only access to data and metrics"),
    SystemRole.GUEST: ("Guest", "Read-only access across the whole UI"),
}

CUSTOM_ROLE_PRIORITY = 50

P = Permission

DEFAULT_ROLE_PERMISSIONS: dict[SystemRole, frozenset[Permission]] = {
    SystemRole.SUPER_ADMIN: frozenset(Permission),
    SystemRole.ADMIN: frozenset(
        {
            P.USERS_VIEW, P.USERS_CREATE, P.USERS_UPDATE, P.USERS_DELETE,
            P.ROLES_VIEW, P.ROLES_ASSIGN,
            P.CH_USERS_VIEW, P.CH_USERS_CREATE, P.CH_USERS_UPDATE, P.CH_USERS_DELETE,
            P.DB_VIEW, P.DB_CREATE, P.DB_DROP,
            P.TABLE_VIEW, P.TABLE_CREATE, P.TABLE_ALTER, P.TABLE_DROP,
            P.TABLE_SELECT, P.TABLE_INSERT, P.TABLE_UPDATE, P.TABLE_DELETE,
            P.QUERY_EXECUTE, P.QUERY_EXECUTE_DDL, P.QUERY_EXECUTE_DML, P.QUERY_EXECUTE_MISC,
            P.QUERY_HISTORY_VIEW, P.QUERY_HISTORY_VIEW_ALL,
            P.SAVED_QUERIES_VIEW, P.SAVED_QUERIES_CREATE, P.SAVED_QUERIES_UPDATE,
            P.SAVED_QUERIES_DELETE, P.SAVED_QUERIES_SHARE,
            P.METRICS_VIEW, P.METRICS_VIEW_ADVANCED,
            P.SETTINGS_VIEW, P.SETTINGS_UPDATE,
            P.AUDIT_VIEW,
            P.LIVE_QUERIES_VIEW, P.LIVE_QUERIES_KILL, P.LIVE_QUERIES_KILL_ALL,
            P.AI_OPTIMIZE, P.AI_CHAT,
            P.AI_MODELS_VIEW, P.AI_MODELS_CREATE, P.AI_MODELS_UPDATE, P.AI_MODELS_DELETE,
        }
    ),
    SystemRole.DEVELOPER: frozenset(
        {
            P.DB_VIEW, P.DB_CREATE, P.DB_DROP,
            P.TABLE_VIEW, P.TABLE_CREATE, P.TABLE_ALTER, P.TABLE_DROP,
            P.TABLE_SELECT, P.TABLE_INSERT, P.TABLE_UPDATE, P.TABLE_DELETE,
            P.QUERY_EXECUTE, P.QUERY_EXECUTE_DDL, P.QUERY_EXECUTE_DML, P.QUERY_EXECUTE_MISC,
            P.QUERY_HISTORY_VIEW,
            P.SAVED_QUERIES_VIEW, P.SAVED_QUERIES_CREATE, P.SAVED_QUERIES_UPDATE, P.SAVED_QUERIES_DELETE,
            P.METRICS_VIEW,
            P.AI_OPTIMIZE, P.AI_CHAT,
        }
    ),
    SystemRole.ANALYST: frozenset(
        {
            P.DB_VIEW,
            P.TABLE_VIEW, P.TABLE_SELECT, P.TABLE_INSERT, P.TABLE_UPDATE, P.TABLE_DELETE,
            P.QUERY_EXECUTE, P.QUERY_EXECUTE_DML, P.QUERY_EXECUTE_MISC,
            P.QUERY_HISTORY_VIEW,
            P.SAVED_QUERIES_VIEW, P.SAVED_QUERIES_CREATE, P.SAVED_QUERIES_UPDATE, P.SAVED_QUERIES_DELETE,
            P.METRICS_VIEW,
            P.AI_OPTIMIZE, P.AI_CHAT,
        }
    ),
    SystemRole.VIEWER: frozenset(
        {
            P.DB_VIEW,
            P.TABLE_VIEW, P.TABLE_SELECT,
            P.QUERY_EXECUTE, P.QUERY_HISTORY_VIEW,
            P.SAVED_QUERIES_VIEW,
            P.METRICS_VIEW,
        }
    ),
    # Read-only everywhere, no DDL/DML.
    SystemRole.GUEST: frozenset(
        {
            P.USERS_VIEW,
            P.ROLES_VIEW,
            P.CH_USERS_VIEW,
            P.DB_VIEW,
            P.TABLE_VIEW, P.TABLE_SELECT,
            P.QUERY_EXECUTE, P.QUERY_HISTORY_VIEW,
            P.SAVED_QUERIES_VIEW,
            P.METRICS_VIEW, P.METRICS_VIEW_ADVANCED,
            P.SETTINGS_VIEW,
            P.AUDIT_VIEW,
        }
    ),
}

del P

ADMIN_ROLE_NAMES = frozenset({SystemRole.SUPER_ADMIN.value, SystemRole.ADMIN.value})


class HasPermissions(Protocol):
    permissions: frozenset[str]


def _permission_set(subject: HasPermissions | Iterable[str]) -> frozenset[str]:
    perms = getattr(subject, "permissions", subject)
    return frozenset(str(p.value if isinstance(p, Permission) else p) for p in perms)


def has_permission(subject: HasPermissions | Iterable[str], permission: Permission) -> bool:
    return permission.value in _permission_set(subject)


def has_any_permission(subject: HasPermissions | Iterable[str], permissions: Iterable[Permission]) -> bool:
    granted = _permission_set(subject)
    return any(p.value in granted for p in permissions)


def has_all_permissions(subject: HasPermissions | Iterable[str], permissions: Iterable[Permission]) -> bool:
    granted = _permission_set(subject)
    return all(p.value in granted for p in permissions)


def validate_permission_names(names: Iterable[str]) -> list[Permission]:
    """Parse wire names into the catalog; raises ValueError listing unknown names."""
    parsed: list[Permission] = []
    unknown: list[str] = []
    for name in names:
        try:
            parsed.append(Permission.parse(name))
        except ValueError:
            unknown.append(name)
    if unknown:
        raise ValueError(f"Unknown permissions: {', '.join(sorted(unknown))}")
    return parsed


def permissions_by_category() -> dict[str, list[str]]:
    grouped: dict[str, list[str]] = {}
    for perm in Permission:
        grouped.setdefault(perm.category, []).append(perm.value)
    return grouped


def resolve_user_roles(db: Session, user_id: str) -> list[str]:
    rows = db.execute(
        select(Role.name)
        .join(UserRole, UserRole.role_id == Role.id)
        .where(UserRole.user_id == user_id)
        .order_by(Role.priority.desc(), Role.name.asc())
    ).all()
    return [row[0] for row in rows]


def resolve_user_permissions(db: Session, user_id: str) -> frozenset[str]:
    """Union of the permission sets of every role assigned to the user."""
    rows = db.execute(
        select(RolePermission.permission)
        .join(UserRole, UserRole.role_id == RolePermission.role_id)
        .where(UserRole.user_id == user_id)
    ).all()
    return frozenset(row[0] for row in rows)

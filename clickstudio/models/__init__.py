"""
SQLAlchemy model base class for the RBAC server.

This package defines ORM models for users, roles, sessions, audit log
entries and stored ClickHouse connections. All models inherit from the
declarative `Base` defined here.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.orm import DeclarativeBase


def utcnow() -> datetime:
    """Naive UTC timestamp; all DateTime columns store UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""

    pass


from .user import User, UserRole  # noqa: E402,F401
from .role import Role, RolePermission  # noqa: E402,F401
from .session import AuthSession  # noqa: E402,F401
from .audit_log import AuditLog  # noqa: E402,F401
from .connection import ClickHouseConnection, UserConnectionAccess  # noqa: E402,F401

__all__ = [
    "Base",
    "utcnow",

    # Identity
    "User",
    "UserRole",
    "Role",
    "RolePermission",
    "AuthSession",

    # Audit
    "AuditLog",

    # Connections
    "ClickHouseConnection",
    "UserConnectionAccess",
]

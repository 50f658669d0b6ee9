"""
Service layer for the ClickStudio RBAC server.

This package holds the permission model, the authenticator, the audit log,
the ClickHouse client pool and the user, role and connection management
logic used by the API routers.
"""

from .audit import AuditAction
from .permissions import Permission, SystemRole

__all__ = ["AuditAction", "Permission", "SystemRole"]

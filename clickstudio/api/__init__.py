"""
API package for the ClickStudio RBAC server.

This package aggregates all API routers to be included in the FastAPI
application. Every route lives under ``/rbac``.
"""

from fastapi import APIRouter, Depends

from .rbac.audit import router as audit_router
from .rbac.auth import router as auth_router
from .rbac.connections import router as connections_router
from .rbac.roles import router as roles_router
from .rbac.system import router as system_router
from .rbac.users import router as users_router
from ..core.rate_limit import rate_limit_dependency

api_router = APIRouter()
limited = [Depends(rate_limit_dependency)]
api_router.include_router(system_router)
api_router.include_router(auth_router, dependencies=limited)
api_router.include_router(users_router, dependencies=limited)
api_router.include_router(roles_router, dependencies=limited)
api_router.include_router(audit_router, dependencies=limited)
api_router.include_router(connections_router, dependencies=limited)

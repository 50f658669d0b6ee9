"""
Health and status endpoints. Both are public.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from ...core.config import APP_VERSION
from ...core.db import check_database_health
from ...core.errors import log_exception
from ...schemas.common import ok
from ...scripts.run_migrations import migration_status


router = APIRouter(prefix="/rbac", tags=["system"])
logger = logging.getLogger("system")


@router.get("/health")
def health(request: Request) -> JSONResponse:
    db_health = check_database_health(request.app.state.engine)
    status = "healthy" if db_health.healthy else "unhealthy"
    body = ok(
        {
            "status": status,
            "database": {"healthy": db_health.healthy, "type": db_health.type, "error": db_health.error},
        }
    )
    return JSONResponse(body, status_code=200 if db_health.healthy else 503)


@router.get("/status")
def status(request: Request) -> dict:
    engine = request.app.state.engine
    db_health = check_database_health(engine)
    migrations = None
    if db_health.healthy:
        try:
            migrations = migration_status(engine)
        except Exception as exc:
            log_exception(logger, "Migration status lookup failed", exc=exc)
            migrations = {"error": str(exc)}
    return ok(
        {
            "version": APP_VERSION,
            "environment": request.app.state.settings.app_env,
            "database": {"healthy": db_health.healthy, "type": db_health.type, "error": db_health.error},
            "migrations": migrations,
            "clientPool": request.app.state.clients.stats(),
        }
    )

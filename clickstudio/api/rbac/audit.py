"""
Audit log endpoints: list, export, stats and bulk delete.

Callers without ``audit:view`` can list only their own entries.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from ...core.auth import UserContext, get_current_user, require_permission
from ...core.db import get_db
from ...core.errors import PermissionDenied
from ...core.pagination import Page, page_params, set_pagination_headers
from ...schemas.audit import AuditLogOut
from ...schemas.common import ok
from ...services.audit import AuditAction, AuditFilters, AuditLogger, grouped_actions
from ...services.permissions import Permission
from ..deps import get_audit


router = APIRouter(prefix="/rbac/audit", tags=["audit"])


def audit_filters(
    user_id: str | None = Query(None, alias="userId"),
    username: str | None = Query(None),
    email: str | None = Query(None),
    action: str | None = Query(None),
    status: str | None = Query(None),
    start_date: datetime | None = Query(None, alias="startDate"),
    end_date: datetime | None = Query(None, alias="endDate"),
) -> AuditFilters:
    return AuditFilters(
        user_id=user_id,
        username=username,
        email=email,
        action=action,
        status=status,
        start_date=start_date,
        end_date=end_date,
    )


@router.get("")
def list_audit_logs(
    response: Response,
    page: Page = Depends(page_params(50)),
    filters: AuditFilters = Depends(audit_filters),
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
    audit: AuditLogger = Depends(get_audit),
) -> dict:
    if not user.has_permission(Permission.AUDIT_VIEW):
        if filters.user_id and filters.user_id != user.user_id:
            raise PermissionDenied(
                f"Permission '{Permission.AUDIT_VIEW.value}' required to view other users' audit logs"
            )
        filters.user_id = user.user_id
    entries, total = audit.list(db, filters, page=page.number, limit=page.limit)
    set_pagination_headers(response, total=total, page=page)
    return ok(
        {
            "logs": [AuditLogOut.model_validate(e).dump() for e in entries],
            **page.meta(total),
        }
    )


@router.get("/actions")
def list_actions(_user: UserContext = Depends(require_permission(Permission.AUDIT_VIEW))) -> dict:
    return ok({"actions": [a.value for a in AuditAction], "groupedActions": grouped_actions()})


@router.get("/metadata")
def audit_metadata(
    db: Session = Depends(get_db),
    _user: UserContext = Depends(require_permission(Permission.AUDIT_VIEW)),
    audit: AuditLogger = Depends(get_audit),
) -> dict:
    return ok(audit.metadata(db))


@router.get("/export")
def export_audit_logs(
    filters: AuditFilters = Depends(audit_filters),
    db: Session = Depends(get_db),
    _user: UserContext = Depends(require_permission(Permission.AUDIT_EXPORT)),
    audit: AuditLogger = Depends(get_audit),
) -> Response:
    body = audit.export_csv(db, filters)
    day = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    return Response(
        content=body,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="audit-logs-{day}.csv"'},
    )


@router.get("/stats")
def audit_stats(
    db: Session = Depends(get_db),
    _user: UserContext = Depends(require_permission(Permission.AUDIT_VIEW)),
    audit: AuditLogger = Depends(get_audit),
) -> dict:
    return ok({"stats": audit.stats(db)})


@router.delete("")
def delete_audit_logs(
    filters: AuditFilters = Depends(audit_filters),
    db: Session = Depends(get_db),
    user: UserContext = Depends(require_permission(Permission.AUDIT_DELETE)),
    audit: AuditLogger = Depends(get_audit),
) -> dict:
    deleted = audit.delete_where(
        db,
        filters,
        actor_id=user.user_id,
        ip_address=user.ip_address,
        user_agent=user.user_agent,
    )
    return ok({"deletedCount": deleted})

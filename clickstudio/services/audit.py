"""
Append-only audit log of security-relevant actions.

``record`` never raises: it writes through its own session so a failed
audit insert cannot roll back (or break) the request that triggered it,
and failures are logged instead. Reads, exports, deletes and stats take
the request's session.
"""

from __future__ import annotations

import csv
import datetime
import io
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Query, Session

from ..core.errors import log_exception
from ..core.pagination import Page, paginate
from ..models import AuditLog, User, utcnow

EXPORT_LIMIT = 10000

CSV_HEADERS = [
    "ID",
    "User ID",
    "Username (Snapshot)",
    "Email (Snapshot)",
    "Display Name (Snapshot)",
    "Action",
    "Resource Type",
    "Resource ID",
    "Status",
    "IP Address",
    "Created At",
]


class AuditAction(str, Enum):
    # Auth
    LOGIN = "auth.login"
    LOGOUT = "auth.logout"
    LOGIN_FAILED = "auth.login_failed"
    PASSWORD_CHANGE = "auth.password_change"

    # User Management
    USER_CREATE = "user.create"
    USER_UPDATE = "user.update"
    USER_DELETE = "user.delete"
    USER_ROLE_ASSIGN = "user.role_assign"
    USER_ROLE_REVOKE = "user.role_revoke"

    # Role Management
    ROLE_CREATE = "role.create"
    ROLE_UPDATE = "role.update"
    ROLE_DELETE = "role.delete"

    # ClickHouse Operations
    CH_QUERY_EXECUTE = "clickhouse.query_execute"
    CH_DATABASE_CREATE = "clickhouse.database_create"
    CH_DATABASE_DROP = "clickhouse.database_drop"
    CH_TABLE_CREATE = "clickhouse.table_create"
    CH_TABLE_ALTER = "clickhouse.table_alter"
    CH_TABLE_DROP = "clickhouse.table_drop"

    SETTINGS_UPDATE = "settings.update"
    LIVE_QUERY_KILL = "live_query.kill"
    AUDIT_LOG_DELETE = "audit.delete"

    # Connection Management
    CONNECTION_CREATE = "connection.create"
    CONNECTION_UPDATE = "connection.update"
    CONNECTION_DELETE = "connection.delete"
    CONNECTION_CONNECT = "connection.connect"
    CONNECTION_GRANT_ACCESS = "connection.grant_access"
    CONNECTION_REVOKE_ACCESS = "connection.revoke_access"

    @property
    def category(self) -> str:
        return self.value.split(".", 1)[0]


def grouped_actions() -> dict[str, list[str]]:
    grouped: dict[str, list[str]] = {}
    for action in AuditAction:
        grouped.setdefault(action.category, []).append(action.value)
    return grouped


def _ensure_utc_naive(dt: datetime.datetime | None) -> datetime.datetime | None:
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return dt


@dataclass
class AuditFilters:
    user_id: str | None = None
    username: str | None = None
    email: str | None = None
    action: str | None = None
    status: str | None = None
    start_date: datetime.datetime | None = None
    end_date: datetime.datetime | None = None

    def apply(self, query: Query) -> Query:
        if self.user_id:
            query = query.filter(AuditLog.user_id == self.user_id)
        if self.username:
            query = query.filter(func.lower(AuditLog.username_snapshot).contains(self.username.lower(), autoescape=True))
        if self.email:
            query = query.filter(func.lower(AuditLog.email_snapshot).contains(self.email.lower(), autoescape=True))
        if self.action:
            query = query.filter(AuditLog.action == self.action)
        if self.status:
            query = query.filter(AuditLog.status == self.status)
        start = _ensure_utc_naive(self.start_date)
        if start:
            query = query.filter(AuditLog.created_at >= start)
        end = _ensure_utc_naive(self.end_date)
        if end:
            query = query.filter(AuditLog.created_at <= end)
        return query

    def as_details(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for key, value in asdict(self).items():
            if value is None or value == "":
                continue
            out[key] = value.isoformat() if isinstance(value, datetime.datetime) else value
        return out


class AuditLogger:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory
        self._logger = logging.getLogger("audit")

    def record(
        self,
        action: AuditAction | str,
        *,
        user_id: str | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        details: dict[str, Any] | None = None,
        status: str = "success",
        error_message: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        action_value = action.value if isinstance(action, AuditAction) else str(action)
        try:
            with self._session_factory() as db:
                entry = AuditLog(
                    user_id=user_id,
                    action=action_value,
                    resource_type=resource_type,
                    resource_id=resource_id,
                    details=details,
                    status=status,
                    error_message=error_message,
                    ip_address=ip_address,
                    user_agent=(user_agent or "")[:512] or None,
                )
                if user_id:
                    user = db.get(User, user_id)
                    if user is not None:
                        entry.username_snapshot = user.username
                        entry.email_snapshot = user.email
                        entry.display_name_snapshot = user.display_name
                db.add(entry)
                db.commit()
        except Exception as exc:
            log_exception(
                self._logger,
                "Audit log write failed",
                extra={"action": action_value, "user_id": user_id},
                exc=exc,
            )

    def list(
        self,
        db: Session,
        filters: AuditFilters,
        *,
        page: int = 1,
        limit: int = 50,
    ) -> tuple[list[AuditLog], int]:
        query = filters.apply(db.query(AuditLog)).order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        return paginate(query, Page.of(page, limit))

    def export_csv(self, db: Session, filters: AuditFilters, *, limit: int = EXPORT_LIMIT) -> str:
        entries, _total = self.list(db, filters, page=1, limit=limit)
        buf = io.StringIO()
        writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerow(CSV_HEADERS)
        for entry in entries:
            writer.writerow(
                [
                    entry.id,
                    entry.user_id or "",
                    entry.username_snapshot or "",
                    entry.email_snapshot or "",
                    entry.display_name_snapshot or "",
                    entry.action,
                    entry.resource_type or "",
                    entry.resource_id or "",
                    entry.status,
                    entry.ip_address or "",
                    entry.created_at.isoformat() + "Z" if entry.created_at else "",
                ]
            )
        return buf.getvalue()

    def delete_where(
        self,
        db: Session,
        filters: AuditFilters,
        *,
        actor_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> int:
        """Bulk-delete matching entries, then record who deleted what."""
        deleted = filters.apply(db.query(AuditLog)).delete(synchronize_session=False)
        db.commit()
        self._logger.info("Deleted %d audit log entries filters=%s", deleted, filters.as_details())
        self.record(
            AuditAction.AUDIT_LOG_DELETE,
            user_id=actor_id,
            resource_type="audit_log",
            details={"deletedCount": deleted, "filters": filters.as_details()},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return deleted

    def stats(self, db: Session, *, now: datetime.datetime | None = None) -> dict[str, Any]:
        now = _ensure_utc_naive(now) or utcnow()
        since = now - datetime.timedelta(hours=24)
        recent = (
            db.query(AuditLog.action, AuditLog.status, AuditLog.created_at)
            .filter(AuditLog.created_at >= since)
            .all()
        )
        by_action: dict[str, int] = {}
        by_status: dict[str, int] = {"success": 0, "failure": 0}
        by_hour: dict[str, int] = {}
        for action, status, created_at in recent:
            by_action[action] = by_action.get(action, 0) + 1
            by_status[status] = by_status.get(status, 0) + 1
            hour = f"{created_at.hour:02d}:00"
            by_hour[hour] = by_hour.get(hour, 0) + 1
        return {
            "totalEvents": db.query(func.count(AuditLog.id)).scalar() or 0,
            "last24Hours": len(recent),
            "byAction": by_action,
            "byStatus": by_status,
            "byHour": by_hour,
        }

    def metadata(self, db: Session) -> dict[str, list[str]]:
        def _distinct(column) -> list[str]:
            rows = db.query(column).filter(column.isnot(None)).distinct().order_by(column.asc()).all()
            return [row[0] for row in rows if row[0]]

        return {
            "usernames": _distinct(AuditLog.username_snapshot),
            "emails": _distinct(AuditLog.email_snapshot),
            "statuses": _distinct(AuditLog.status),
        }

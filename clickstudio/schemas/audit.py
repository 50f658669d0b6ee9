"""
Pydantic schemas for audit log responses.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from .common import CamelModel


class AuditLogOut(CamelModel):
    id: str
    user_id: str | None = None
    action: str
    resource_type: str | None = None
    resource_id: str | None = None
    details: dict[str, Any] | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    status: str
    error_message: str | None = None
    username_snapshot: str | None = None
    email_snapshot: str | None = None
    display_name_snapshot: str | None = None
    created_at: datetime

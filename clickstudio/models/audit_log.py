"""
ORM model for the append-only audit log.

``user_id`` deliberately has no foreign key: entries are a historical
record and outlive the users they mention.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from . import Base, utcnow


class AuditLog(Base):
    __tablename__ = "rbac_audit_logs"
    __table_args__ = (
        Index("ix_rbac_audit_logs_resource", "resource_type", "resource_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(64), index=True)
    resource_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="success", index=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    username_snapshot: Mapped[str | None] = mapped_column(String(128), nullable=True)
    email_snapshot: Mapped[str | None] = mapped_column(String(255), nullable=True)
    display_name_snapshot: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)

"""
ORM models for stored ClickHouse connections and per-user access grants.

The password column holds vault ciphertext only.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from . import Base, utcnow


class ClickHouseConnection(Base):
    __tablename__ = "rbac_clickhouse_connections"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(128))
    host: Mapped[str] = mapped_column(String(255))
    port: Mapped[int] = mapped_column(Integer, default=8123)
    username: Mapped[str] = mapped_column(String(128))
    password_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    database: Mapped[str | None] = mapped_column(String(128), nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    ssl_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    created_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    @property
    def url(self) -> str:
        protocol = "https" if self.ssl_enabled else "http"
        return f"{protocol}://{self.host}:{self.port}"


class UserConnectionAccess(Base):
    __tablename__ = "rbac_user_connections"
    __table_args__ = (UniqueConstraint("user_id", "connection_id", name="uq_rbac_user_connections"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("rbac_users.id", ondelete="CASCADE"), index=True
    )
    connection_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("rbac_clickhouse_connections.id", ondelete="CASCADE"), index=True
    )
    can_use: Mapped[bool] = mapped_column(Boolean, default=True)
    granted_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    granted_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

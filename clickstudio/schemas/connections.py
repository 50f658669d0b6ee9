"""
Pydantic schemas for stored ClickHouse connections.

Responses never carry the password; ``hasPassword`` says whether one is stored.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import Field

from .common import CamelModel


class ConnectionCreate(CamelModel):
    name: str = Field(..., min_length=1, max_length=128)
    host: str = Field(..., min_length=1, max_length=255)
    port: int = Field(8123, ge=1, le=65535)
    username: str = Field(..., min_length=1, max_length=128)
    password: str | None = None
    database: str | None = Field(None, max_length=128)
    is_default: bool = False
    is_active: bool = True
    ssl_enabled: bool = False
    metadata: dict[str, Any] | None = None


class ConnectionUpdate(CamelModel):
    name: str | None = Field(None, min_length=1, max_length=128)
    host: str | None = Field(None, min_length=1, max_length=255)
    port: int | None = Field(None, ge=1, le=65535)
    username: str | None = Field(None, min_length=1, max_length=128)
    password: str | None = None
    database: str | None = Field(None, max_length=128)
    is_default: bool | None = None
    is_active: bool | None = None
    ssl_enabled: bool | None = None
    metadata: dict[str, Any] | None = None


class ConnectionTestIn(CamelModel):
    host: str = Field(..., min_length=1, max_length=255)
    port: int = Field(8123, ge=1, le=65535)
    username: str = Field(..., min_length=1, max_length=128)
    password: str | None = None
    database: str | None = None
    ssl_enabled: bool = False


class ConnectionOut(CamelModel):
    id: str
    name: str
    host: str
    port: int
    username: str
    database: str | None = None
    is_default: bool
    is_active: bool
    ssl_enabled: bool
    has_password: bool = False
    created_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    metadata: dict[str, Any] | None = None

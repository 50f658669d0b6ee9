"""
Pydantic schemas for role management.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from .common import CamelModel


class RoleCreate(CamelModel):
    name: str = Field(..., min_length=2, max_length=64)
    display_name: str = Field(..., min_length=1, max_length=128)
    description: str | None = Field(None, max_length=500)
    permissions: list[str] = Field(default_factory=list)
    is_default: bool = False


class RoleUpdate(CamelModel):
    display_name: str | None = Field(None, min_length=1, max_length=128)
    description: str | None = Field(None, max_length=500)
    permissions: list[str] | None = None
    is_default: bool | None = None


class RoleOut(CamelModel):
    id: str
    name: str
    display_name: str
    description: str | None = None
    is_system: bool
    is_default: bool
    priority: int
    permissions: list[str] = []
    user_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

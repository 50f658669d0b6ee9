"""
Pydantic schemas for user management.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import EmailStr, Field

from .common import CamelModel


class UserCreate(CamelModel):
    email: EmailStr
    username: str = Field(..., min_length=3, max_length=50)
    password: str | None = Field(None, min_length=8)
    display_name: str | None = Field(None, max_length=100)
    role_ids: list[str] | None = Field(None, max_length=1, description="At most one role per user")
    generate_password: bool = False


class UserUpdate(CamelModel):
    email: EmailStr | None = None
    username: str | None = Field(None, min_length=3, max_length=50)
    display_name: str | None = Field(None, max_length=100)
    avatar_url: str | None = Field(None, max_length=1024)
    is_active: bool | None = None
    role_ids: list[str] | None = Field(None, max_length=1)


class ResetPasswordIn(CamelModel):
    new_password: str | None = Field(None, min_length=8)
    generate_password: bool = False


class AssignRolesIn(CamelModel):
    role_ids: list[str] = Field(..., min_length=1, max_length=1, description="Exactly one role")


class UserOut(CamelModel):
    id: str
    email: str
    username: str
    display_name: str | None = None
    avatar_url: str | None = None
    is_active: bool
    is_system_user: bool = False
    roles: list[str] = []
    permissions: list[str] = []
    last_login_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

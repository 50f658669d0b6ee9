"""
Pydantic schemas for authentication requests.
"""

from __future__ import annotations

from pydantic import Field

from .common import CamelModel


class LoginIn(CamelModel):
    identifier: str = Field(..., min_length=1, description="Email or username")
    password: str = Field(..., min_length=1)


class RefreshIn(CamelModel):
    refresh_token: str = Field(..., min_length=1)


class LogoutIn(CamelModel):
    refresh_token: str | None = None


class ChangePasswordIn(CamelModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=8)

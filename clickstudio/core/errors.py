"""
Error taxonomy and shared error-handling helpers.

Every error that reaches the HTTP layer is an ``AppError`` (or is turned
into one by the exception handlers in ``clickstudio.main``) and is rendered
as ``{"success": false, "error": {code, message, category, ...}}``. The
401/403 split is relied on by the frontend: 401 ends the session, 403
shows a permission-denied affordance.
"""

from __future__ import annotations

import logging
from typing import Any

ERROR_CATEGORIES = {
    "connection",
    "authentication",
    "query",
    "timeout",
    "network",
    "validation",
    "permission",
    "unknown",
}


def _format_extra(extra: dict | None) -> str:
    if not extra:
        return ""
    parts: list[str] = []
    for key, value in extra.items():
        if value is None:
            continue
        parts.append(f"{key}={value}")
    return f" {' '.join(parts)}" if parts else ""


def log_exception(logger: logging.Logger, msg: str, *, extra: dict | None = None, exc: BaseException | None = None) -> None:
    """
    Log an exception with context. Uses logger.exception for stack traces.
    """
    suffix = _format_extra(extra)
    if exc is not None:
        logger.error(f"{msg}{suffix}: {exc}", exc_info=exc)
        return
    logger.exception(f"{msg}{suffix}")


class AppError(Exception):
    def __init__(
        self,
        message: str,
        code: str,
        category: str = "unknown",
        status_code: int = 500,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.category = category if category in ERROR_CATEGORIES else "unknown"
        self.status_code = status_code
        self.details = details

    @classmethod
    def bad_request(cls, message: str, details: Any = None) -> "AppError":
        return cls(message, "BAD_REQUEST", "validation", 400, details)

    @classmethod
    def unauthorized(cls, message: str = "Unauthorized") -> "AppError":
        return cls(message, "UNAUTHORIZED", "authentication", 401)

    @classmethod
    def forbidden(cls, message: str = "Forbidden") -> "AppError":
        return cls(message, "FORBIDDEN", "permission", 403)

    @classmethod
    def not_found(cls, message: str = "Not found") -> "AppError":
        return cls(message, "NOT_FOUND", "unknown", 404)

    @classmethod
    def conflict(cls, message: str) -> "AppError":
        return cls(message, "CONFLICT", "validation", 409)

    @classmethod
    def internal(cls, message: str, details: Any = None) -> "AppError":
        return cls(message, "INTERNAL_ERROR", "unknown", 500, details)

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "category": self.category,
            "details": self.details,
        }


class AuthError(AppError):
    """Identity could not be established. Always a 401, never retried."""

    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_INVALID = "TOKEN_INVALID"
    TOKEN_MISSING = "TOKEN_MISSING"
    SESSION_REVOKED = "SESSION_REVOKED"

    def __init__(self, code: str, message: str | None = None) -> None:
        default_messages = {
            self.INVALID_CREDENTIALS: "Invalid email/username or password",
            self.TOKEN_EXPIRED: "Token expired. Please refresh your token.",
            self.TOKEN_INVALID: "Invalid token",
            self.TOKEN_MISSING: "No authentication token provided",
            self.SESSION_REVOKED: "Session has been revoked",
        }
        super().__init__(message or default_messages.get(code, "Unauthorized"), code, "authentication", 401)


class PermissionDenied(AppError):
    """Identity is known but lacks the permission required. Always a 403."""

    def __init__(self, message: str = "Forbidden", code: str = "FORBIDDEN") -> None:
        super().__init__(message, code, "permission", 403)


class CryptoError(AppError):
    """A stored credential could not be decrypted (tampered, malformed or wrong key)."""

    def __init__(self, message: str = "Stored credential is unusable") -> None:
        super().__init__(message, "CREDENTIAL_UNUSABLE", "unknown", 500)


class PoolError(AppError):
    """A pooled ClickHouse client could not be created or closed."""

    def __init__(self, message: str, *, failures: list[tuple[str, BaseException]] | None = None) -> None:
        self.failures = list(failures or [])
        details = None
        if self.failures:
            details = {"failures": [{"client": key, "error": str(err)} for key, err in self.failures]}
        super().__init__(message, "POOL_ERROR", "connection", 502, details)

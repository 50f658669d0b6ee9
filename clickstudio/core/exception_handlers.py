"""
Exception handlers that render every failure as the error envelope.

    {"success": false, "error": {"id", "code", "message", "category", "details"}}

The ``id`` is the request id when one is known so a client report can be
matched to the server log line.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .errors import AppError, log_exception

logger = logging.getLogger("errors")

_HTTP_CODES = {
    400: ("BAD_REQUEST", "validation"),
    401: ("UNAUTHORIZED", "authentication"),
    403: ("FORBIDDEN", "permission"),
    404: ("NOT_FOUND", "unknown"),
    405: ("METHOD_NOT_ALLOWED", "unknown"),
    409: ("CONFLICT", "validation"),
    429: ("RATE_LIMITED", "unknown"),
}


def _error_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


def error_body(request: Request, code: str, message: str, category: str, details: Any = None) -> dict:
    return {
        "success": False,
        "error": {
            "id": _error_id(request),
            "code": code,
            "message": message,
            "category": category,
            "details": details,
        },
    }


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        log_exception(
            logger,
            "Request failed",
            extra={"code": exc.code, "path": request.url.path},
            exc=exc,
        )
    else:
        logger.info("%s %s -> %s %s", request.method, request.url.path, exc.status_code, exc.code)
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(request, exc.code, exc.message, exc.category, exc.details),
        headers=headers,
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = []
    for error in exc.errors():
        loc = error["loc"]
        field = ".".join(str(x) for x in loc[1:]) if len(loc) > 1 else str(loc[0])
        errors.append({"field": field, "message": error["msg"], "type": error["type"]})
    return JSONResponse(
        status_code=400,
        content=error_body(request, "VALIDATION_ERROR", "Request validation failed", "validation", {"errors": errors}),
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, category = _HTTP_CODES.get(exc.status_code, ("HTTP_ERROR", "unknown"))
    headers = dict(exc.headers or {})
    if exc.status_code == 401 and "WWW-Authenticate" not in headers:
        headers["WWW-Authenticate"] = "Bearer"
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(request, code, str(exc.detail), category),
        headers=headers or None,
    )


def unhandled_error_handler_factory(hide_message: bool):
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        log_exception(
            logger,
            "Unhandled exception",
            extra={"method": request.method, "path": request.url.path},
            exc=exc,
        )
        message = "Internal server error" if hide_message else str(exc) or exc.__class__.__name__
        return JSONResponse(
            status_code=500,
            content=error_body(request, "INTERNAL_ERROR", message, "unknown"),
        )

    return unhandled_error_handler


def setup_exception_handlers(app: FastAPI, *, hide_internal_messages: bool) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler_factory(hide_internal_messages))

"""
Request middleware and exception handlers.

Every error leaves the service in one envelope:

    {"error": {"code": "ACT_007", "message": "...", "detail": {...},
               "correlation_id": "..."}}

The correlation ID is also echoed in ``X-Correlation-ID`` and bound to the
structlog context, so an ``activity_log_failed`` line can be traced back to
the request whose audit entry was lost.
"""

from __future__ import annotations

import re
import time
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.middleware.base import BaseHTTPMiddleware

from auditchain.core.errors import AppError, ErrorCode

_log = structlog.get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"

# Caller-supplied IDs end up in log lines; anything else is replaced
_CORRELATION_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def _correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", "")


class CorrelationIDMiddleware(BaseHTTPMiddleware):
    """Assign each request a correlation ID and log its completion."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        supplied = request.headers.get(CORRELATION_HEADER, "")
        correlation_id = supplied if _CORRELATION_ID.match(supplied) else str(uuid.uuid4())
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            correlation_id=correlation_id,
            method=request.method,
            path=request.url.path,
        )
        request.state.correlation_id = correlation_id

        start = time.perf_counter()
        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        _log.info(
            "request_completed",
            status_code=response.status_code,
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Responses carry audit data: never cache or frame them."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cache-Control"] = "no-store"
        return response


# ── Exception handlers ────────────────────────────────────────────────── #


def error_response(
    request: Request,
    status_code: int,
    code: ErrorCode | str,
    message: str,
    detail: dict[str, Any] | None = None,
) -> JSONResponse:
    correlation_id = _correlation_id(request)
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "code": code.value if isinstance(code, ErrorCode) else code,
                "message": message,
                "detail": detail or {},
                "correlation_id": correlation_id,
            }
        },
        headers={CORRELATION_HEADER: correlation_id},
    )


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    # 5xx AppErrors (store down, signing key missing) are operational faults
    log = _log.error if exc.http_status >= 500 else _log.warning
    log(
        "application_error",
        error_code=exc.code.value,
        message=exc.message,
        http_status=exc.http_status,
    )
    return error_response(request, exc.http_status, exc.code, exc.message, exc.detail)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Never leaks internal detail to the client."""
    _log.exception("unhandled_exception", exc_info=exc)
    return error_response(
        request, 500, ErrorCode.INTERNAL_ERROR, "An unexpected internal error occurred."
    )


async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    _log.warning("rate_limited", limit=str(exc.detail))
    return error_response(
        request, 429, ErrorCode.RATE_LIMITED, "Too many requests.", {"limit": str(exc.detail)}
    )

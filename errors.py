"""
errors.py — Domain exceptions and the FastAPI handlers that render them.

Services raise StoreError subclasses; the app turns them into
{"success": false, "message": ...} bodies with the matching status code.
"""
from __future__ import annotations

import logging
import time
import traceback
from typing import Any, Optional

import asyncpg
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class StoreError(Exception):
    status_code: int = 500

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        is_operational: bool = True,
        details: Any = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.is_operational = is_operational
        self.details = details


class BadRequestError(StoreError):
    status_code = 400


class UnauthorizedError(StoreError):
    status_code = 401


class NotFoundError(StoreError):
    status_code = 404


class ConflictError(StoreError):
    status_code = 409


class PaymentError(StoreError):
    status_code = 502


class ServiceNotConfiguredError(StoreError):
    status_code = 503


# ============================================================
# Handlers
# ============================================================

def _body(message: str, details: Any = None, stack: Optional[str] = None) -> dict[str, Any]:
    body: dict[str, Any] = {"success": False, "message": message}
    if details is not None:
        body["details"] = details
    if stack:
        body["stack"] = stack
    return body


def register_error_handlers(app: FastAPI, development: bool = False) -> None:

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        if exc.status_code >= 500:
            logger.error(f"[error] {request.method} {request.url.path}: {exc.message}")
        stack = None
        if development and not exc.is_operational:
            stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return JSONResponse(
            status_code=exc.status_code,
            content=_body(exc.message, exc.details, stack),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = [
            {
                "field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"),
                "message": err.get("msg", "Invalid value"),
            }
            for err in exc.errors()
        ]
        return JSONResponse(status_code=400, content=_body("Validation Error", details))

    @app.exception_handler(asyncpg.exceptions.PostgresConnectionError)
    async def db_connection_handler(request: Request, exc: asyncpg.exceptions.PostgresConnectionError):
        logger.error(f"[error] database unavailable: {exc}")
        return JSONResponse(status_code=503, content=_body("Database connection error"))

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        limiter = request.app.state.limiter
        current_limit = request.state.view_rate_limit
        reset_at = limiter.limiter.get_window_stats(current_limit[0], *current_limit[1])[0]
        retry_after = max(1, int(1 + reset_at - time.time()))
        logger.warning(f"[ratelimit] {request.method} {request.url.path} "
                       f"ip={get_remote_address(request)} limit={exc.detail}")
        response = JSONResponse(
            status_code=429,
            content={"error": "Too many requests", "retry_after": retry_after},
        )
        return limiter._inject_headers(response, current_limit)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404 and exc.detail == "Not Found":
            return JSONResponse(
                status_code=404,
                content=_body(f"Route {request.method} {request.url.path} not found"),
            )
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"[error] unhandled {request.method} {request.url.path}")
        stack = None
        if development:
            stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return JSONResponse(status_code=500, content=_body("Internal Server Error", stack=stack))

"""
Handler adapters composed at route registration.

A route handler is wrapped explicitly, e.g.
``error_boundary(timed(authenticated(resolver, handler)))``; handlers carry
no decorators of their own.
"""

import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..context import AuthContext
from ..exceptions import AuthError, RateLimitedError
from ..types import ValidationError
from .auth import AuthContextResolver

logger = logging.getLogger(__name__)

Handler = Callable[[Request], Awaitable[Response]]
AuthenticatedHandler = Callable[[Request, AuthContext], Awaitable[Response]]


def success(data: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse({"success": True, "data": data}, status_code=status_code)


def error_response(error: AuthError) -> JSONResponse:
    body: dict[str, Any] = {"code": error.code, "message": error.public_message}
    if isinstance(error, ValidationError):
        body["detail"] = error.message

    headers = {}
    if isinstance(error, RateLimitedError) and error.retry_after is not None:
        headers["Retry-After"] = str(int(error.retry_after))
    if error.status_code == 401:
        headers["WWW-Authenticate"] = "Bearer"
    return JSONResponse(
        {"success": False, "error": body}, status_code=error.status_code, headers=headers
    )


def error_boundary(handler: Handler) -> Handler:
    """Map ``AuthError`` to its public JSON shape; log the internal detail."""

    async def wrapper(request: Request) -> Response:
        try:
            return await handler(request)
        except AuthError as e:
            log = logger.warning if e.status_code < 500 else logger.error
            log(
                f"{request.method} {request.url.path} failed: "
                f"{type(e).__name__}: {e.message}"
            )
            return error_response(e)
        except Exception:
            logger.exception(f"Unhandled error in {request.method} {request.url.path}")
            return JSONResponse(
                {"success": False, "error": {"code": "internal_error", "message": "Internal server error"}},
                status_code=500,
            )

    return wrapper


def timed(handler: Handler) -> Handler:
    """Log the handler's duration."""

    async def wrapper(request: Request) -> Response:
        started = time.perf_counter()
        status = "error"
        try:
            response = await handler(request)
            status = response.status_code
            return response
        finally:
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.info(f"{request.method} {request.url.path} -> {status} in {elapsed_ms:.1f}ms")

    return wrapper


def authenticated(resolver: AuthContextResolver, handler: AuthenticatedHandler) -> Handler:
    """Resolve the caller once and pass the context to the handler."""

    async def wrapper(request: Request) -> Response:
        context = await resolver.resolve(request)
        return await handler(request, context)

    return wrapper

"""
Per-request context for attributing writes.

The acting user is read from the ``X-User-Id`` header and kept in a context
variable so services can stamp ``created_by`` without threading the value
through every call.

Usage:
    app.add_middleware(RequestContextMiddleware)

    # anywhere inside the request:
    user_id = get_request_user()
"""
from __future__ import annotations

import contextvars
import logging

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger(__name__)

_ctx_user_id: contextvars.ContextVar[int | None] = contextvars.ContextVar(
    "_ctx_user_id", default=None
)


def set_request_user(user_id: int | None) -> contextvars.Token:
    return _ctx_user_id.set(user_id)


def get_request_user() -> int | None:
    return _ctx_user_id.get()


def _parse_user_id(raw: str | None) -> int | None:
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric X-User-Id header: %r", raw)
        return None


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Set the acting user for the duration of the request."""

    async def dispatch(self, request: Request, call_next):
        token = set_request_user(_parse_user_id(request.headers.get("X-User-Id")))
        try:
            return await call_next(request)
        finally:
            _ctx_user_id.reset(token)

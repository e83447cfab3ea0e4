"""
Correlation ID middleware.

Every request gets a correlation id, taken from an incoming X-Correlation-ID
header or generated. It is stored in a context variable for the duration of
the request, stamped on log records by CorrelationIdFilter, and echoed on
the response in X-Correlation-ID.

Usage:
    from app.middleware.correlation import CorrelationMiddleware
    app.add_middleware(CorrelationMiddleware)
"""

import contextvars
import logging
from typing import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from app.services.inbound_email_adapter import generate_correlation_id

CORRELATION_HEADER = "X-Correlation-ID"

_correlation_id_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    """Correlation id of the current request, or "" outside a request."""
    return _correlation_id_ctx.get()


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    return _correlation_id_ctx.set(correlation_id)


def reset_correlation_id(token: contextvars.Token) -> None:
    _correlation_id_ctx.reset(token)


class CorrelationIdFilter(logging.Filter):
    """Adds `correlation_id` to every record so formats can reference it."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or "-"
        return True


class CorrelationMiddleware(BaseHTTPMiddleware):

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or generate_correlation_id()
        request.state.correlation_id = correlation_id

        token = set_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response

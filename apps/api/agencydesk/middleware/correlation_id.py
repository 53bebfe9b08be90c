from __future__ import annotations

import re
import uuid
from collections.abc import Mapping

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from agencydesk.context import correlation_scope


CORRELATION_HEADERS = ("x-correlation-id", "x-request-id")
_VALID_CORRELATION_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def supplied_correlation_id(headers: Mapping[str, str]) -> str | None:
    """First correlation header that holds a safe token, if any."""
    for header in CORRELATION_HEADERS:
        value = (headers.get(header) or "").strip()
        if value and _VALID_CORRELATION_ID.match(value):
            return value
    return None


def resolve_correlation_id(request: Request) -> str:
    """Reuse the caller's id when it is a safe token, otherwise mint a new one."""
    return supplied_correlation_id(request.headers) or str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = resolve_correlation_id(request)
        request.state.correlation_id = correlation_id
        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)

        with correlation_scope(correlation_id):
            response = await call_next(request)

        response.headers["x-correlation-id"] = correlation_id
        return response

from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import reset_correlation_id, set_correlation_id


_ACCEPTED_ID = re.compile(r"^[A-Za-z0-9._:\-]{1,128}$")


def resolve_correlation_id(request: Request) -> str:
    """Reuse the caller's correlation id when it is sane, otherwise mint one.

    Flow callbacks and webhook relays send ``x-request-id`` instead of
    ``x-correlation-id``, so both are honoured.
    """
    for header in ("x-correlation-id", "x-request-id"):
        candidate = request.headers.get(header)
        if candidate and _ACCEPTED_ID.match(candidate):
            return candidate
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = resolve_correlation_id(request)
        request.state.correlation_id = correlation_id
        token = set_correlation_id(correlation_id)
        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers["x-correlation-id"] = correlation_id
        return response

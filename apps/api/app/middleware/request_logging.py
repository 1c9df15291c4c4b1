from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")

# Paths scraped on a tight loop; logged at debug so they do not drown deal traffic.
_QUIET_PATHS = {"/health", "/metrics"}


def _request_fields(request: Request, path: str) -> dict[str, Any]:
    return {
        "method": request.method,
        "path": path,
        "organization": request.headers.get("x-organization"),
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        path = resolve_http_path_label(request)
        fields = _request_fields(request, path)

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - started
            observe_http_request(method=request.method, path=path, status=500, duration=duration)
            logger.error(
                "http.error",
                exc_info=True,
                extra={**fields, "status_code": 500, "duration_ms": round(duration * 1000, 2)},
            )
            raise

        duration = time.perf_counter() - started
        observe_http_request(method=request.method, path=path, status=response.status_code, duration=duration)
        level = logging.DEBUG if path in _QUIET_PATHS else logging.INFO
        logger.log(
            level,
            "http.request",
            extra={**fields, "status_code": response.status_code, "duration_ms": round(duration * 1000, 2)},
        )
        return response

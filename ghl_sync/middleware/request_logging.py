from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from ghl_sync.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("ghl_sync.request")

_NOISY_STATUSES = {401, 403, 409}


def _fields(request: Request, path: str, status_code: int, started: float) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "method": request.method,
        "path": path,
        "status_code": status_code,
        "duration_ms": round((time.perf_counter() - started) * 1000, 2),
    }
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        fields["user_id"] = user_id
    return fields


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            fields = _fields(request, resolve_http_path_label(request), 500, started)
            observe_http_request(request.method, fields["path"], 500, fields["duration_ms"] / 1000)
            logger.error("http.error", exc_info=True, extra=fields)
            raise

        # the matched route is only known after the router ran
        fields = _fields(request, resolve_http_path_label(request), response.status_code, started)
        observe_http_request(request.method, fields["path"], response.status_code, fields["duration_ms"] / 1000)
        level = logging.WARNING if response.status_code in _NOISY_STATUSES else logging.INFO
        logger.log(level, "http.request", extra=fields)
        return response

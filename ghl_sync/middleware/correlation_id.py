from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from ghl_sync.context import reset_correlation_id, set_correlation_id


CORRELATION_HEADER = "x-correlation-id"
_INBOUND_HEADERS = (CORRELATION_HEADER, "x-request-id")
_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9._:\-]{1,128}$")


def resolve_correlation_id(request: Request) -> str:
    """Reuse a caller-supplied id when it is safe to echo back, else mint one."""
    for header in _INBOUND_HEADERS:
        candidate = (request.headers.get(header) or "").strip()
        if candidate and _SAFE_ID_RE.match(candidate):
            return candidate
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = resolve_correlation_id(request)
        request.state.correlation_id = correlation_id
        current_span = trace.get_current_span()
        if current_span.is_recording():
            current_span.set_attribute("correlation_id", correlation_id)

        token = set_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response

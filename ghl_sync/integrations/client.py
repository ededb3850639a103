from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any, Protocol

import httpx
from opentelemetry import trace

from ghl_sync.context import get_correlation_id
from ghl_sync.errors import ExternalApiError
from ghl_sync.integrations.config import IntegrationConfig
from ghl_sync.integrations.models import Connection
from ghl_sync.metrics import observe_api_request
from ghl_sync.otel import mark_span_error


logger = logging.getLogger(__name__)
tracer = trace.get_tracer("ghl_sync.integrations.client")


class GhlClient(Protocol):
    def request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        query: dict[str, Any] | None = None,
    ) -> tuple[int, Any]: ...


ClientFactory = Callable[[Connection], GhlClient]


_shared_http: httpx.Client | None = None
_shared_http_guard = threading.Lock()


def shared_http_client() -> httpx.Client:
    """Connection pool reused by every job in this process."""
    global _shared_http
    with _shared_http_guard:
        if _shared_http is None or _shared_http.is_closed:
            _shared_http = httpx.Client()
        return _shared_http


class HttpxGhlClient:
    def __init__(self, access_token: str, config: IntegrationConfig, http_client: httpx.Client | None = None) -> None:
        self._config = config
        self._owns_http = http_client is None
        self._http = http_client or httpx.Client(timeout=config.http_timeout_seconds)
        self._headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Version": config.api_version,
        }

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> HttpxGhlClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        query: dict[str, Any] | None = None,
    ) -> tuple[int, Any]:
        url = f"{self._config.api_base.rstrip('/')}/{path.lstrip('/')}"
        with tracer.start_as_current_span("ghl.api.request") as span:
            span.set_attribute("http.method", method)
            span.set_attribute("ghl.path", path)
            span.set_attribute("correlation_id", get_correlation_id() or "")
            try:
                response = self._http.request(
                    method,
                    url,
                    json=body,
                    params=query,
                    headers=self._headers,
                    timeout=self._config.http_timeout_seconds,
                )
            except httpx.TimeoutException as exc:
                observe_api_request(method, None)
                mark_span_error(span, exc)
                raise ExternalApiError(method, path, None) from exc
            except httpx.TransportError as exc:
                observe_api_request(method, None)
                mark_span_error(span, exc)
                raise ExternalApiError(method, path, None, str(exc)) from exc

            observe_api_request(method, response.status_code)
            span.set_attribute("http.status_code", response.status_code)
            payload = _decode(response)
            if response.is_success:
                return response.status_code, payload

            error = ExternalApiError(method, path, response.status_code, payload)
            mark_span_error(span, error)
            logger.warning("ghl_api.request_failed", extra={"status_code": response.status_code, "path": path})
            raise error


def _decode(response: httpx.Response) -> Any:
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError:
        return {"raw": response.text}


def build_client(connection: Connection, config: IntegrationConfig) -> GhlClient:
    return HttpxGhlClient(connection.access_token or "", config, shared_http_client())

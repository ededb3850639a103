from __future__ import annotations

import os
from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor, SpanExporter
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import Span, Status, StatusCode

SERVICE_NAME = "ghl-sync"
MAX_STATUS_DESCRIPTION = 200

_state: dict[str, Any] = {"provider": None, "exporters": []}


def tracer_provider(service_name: str = SERVICE_NAME) -> TracerProvider:
    """Process-wide provider. The global provider can only be set once per process."""
    provider = _state["provider"]
    if provider is None:
        provider = TracerProvider(
            resource=Resource.create(
                {"service.name": service_name, "service.version": os.getenv("APP_VERSION", "0.1.0")}
            )
        )
        trace.set_tracer_provider(provider)
        _state["provider"] = provider
    return provider


def _attach(exporter: SpanExporter, service_name: str = SERVICE_NAME) -> None:
    tracer_provider(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    _state["exporters"].append(exporter)


def setup_otel(enabled: bool, service_name: str = SERVICE_NAME) -> TracerProvider | None:
    if not enabled:
        return None
    provider = tracer_provider(service_name)
    console_requested = os.getenv("OTEL_CONSOLE_EXPORTER", "false").lower() == "true"
    has_console = any(isinstance(item, ConsoleSpanExporter) for item in _state["exporters"])
    if console_requested and not has_console:
        _attach(ConsoleSpanExporter(), service_name)
    return provider


def setup_inmemory_otel(service_name: str = SERVICE_NAME) -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _attach(exporter, service_name)
    return exporter


def mark_span_error(span: Span, exc: BaseException) -> None:
    span.record_exception(exc)
    span.set_status(Status(StatusCode.ERROR, str(exc)[:MAX_STATUS_DESCRIPTION]))


def server_request_hook(span: Span | None, scope: dict[str, Any]) -> None:
    if span is None or not span.is_recording():
        return
    for name, value in scope.get("headers", []):
        if name == b"x-correlation-id":
            span.set_attribute("correlation_id", value.decode("utf-8", "replace"))
            break
    if scope.get("path", "").startswith("/webhooks/"):
        span.set_attribute("ghl.webhook", True)

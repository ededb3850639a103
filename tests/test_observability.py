from __future__ import annotations

import json
import logging
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy.orm import Session

from ghl_sync.context import reset_correlation_id, set_correlation_id
from ghl_sync.core.auth import AuthUser, get_current_user
from ghl_sync.core.config import get_settings
from ghl_sync.core.database import get_db
from ghl_sync.logging import CorrelationIdFilter, JsonLogFormatter, SecretRedactionFilter
from ghl_sync.main import app
from ghl_sync.otel import setup_inmemory_otel
from ghl_sync.webhooks.dispatcher import WebhookDispatcher
from tests.factories import LOCATION_ID, make_account, make_connection


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _record(**extra) -> logging.LogRecord:
    record = logging.makeLogRecord({"name": "ghl_sync.test", "levelname": "INFO", "msg": "token_refresh.failed"})
    record.__dict__.update(extra)
    return record


def test_correlation_id_is_generated_and_echoed(client: TestClient) -> None:
    generated = client.get("/health")
    assert generated.status_code == 200
    assert generated.headers.get("x-correlation-id")

    provided = client.get("/health", headers={"X-Correlation-Id": "corr-42"})
    assert provided.headers.get("x-correlation-id") == "corr-42"


def test_request_log_carries_route_and_correlation_id(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    client.get("/health", headers={"X-Correlation-Id": "corr-log-1"})

    records = [r for r in caplog.records if r.name == "ghl_sync.request" and r.getMessage() == "http.request"]
    assert any(
        getattr(r, "correlation_id", None) == "corr-log-1"
        and getattr(r, "path", None) == "/health"
        and getattr(r, "status_code", None) == 200
        for r in records
    )


def test_secrets_are_redacted_before_formatting() -> None:
    record = _record(
        access_token="at-123",
        error="401 from GHL for Bearer abc.def.ghi",
        account_id="acc-1",
    )

    SecretRedactionFilter().filter(record)
    payload = json.loads(JsonLogFormatter().format(record))

    assert record.access_token == "[REDACTED]"
    assert payload["fields"]["error"] == "401 from GHL for Bearer [REDACTED]"
    assert payload["fields"]["account_id"] == "acc-1"
    assert "access_token" not in payload["fields"]


def test_formatter_stamps_context_correlation_id() -> None:
    token = set_correlation_id("job-corr-7")
    try:
        record = _record()
        CorrelationIdFilter().filter(record)
    finally:
        reset_correlation_id(token)

    payload = json.loads(JsonLogFormatter().format(record))
    assert payload["correlation_id"] == "job-corr-7"
    assert payload["msg"] == "token_refresh.failed"


def test_metrics_endpoint_requires_flag_and_permission(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    assert client.get("/metrics").status_code == 404

    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    assert client.get("/metrics").status_code == 403

    app.dependency_overrides[get_current_user] = lambda: AuthUser(sub="ops", roles=["system.metrics.read"])
    client.get("/health")
    response = client.get("/metrics")

    assert response.status_code == 200
    assert "http_requests_total" in response.text
    assert 'path="/health"' in response.text
    assert "ghl_webhooks_total" in response.text
    assert "ghl_jobs_total" in response.text


@pytest.fixture(scope="module")
def span_exporter() -> InMemorySpanExporter:
    return setup_inmemory_otel()


def test_dispatch_and_sync_emit_spans(span_exporter: InMemorySpanExporter, db_session: Session, integration_config) -> None:
    account = make_account(db_session)
    make_connection(db_session, account)
    span_exporter.clear()

    WebhookDispatcher(db_session, integration_config, client_factory=lambda c: None).dispatch(
        "ContactCreate", {"locationId": LOCATION_ID, "contact": {"id": "c-span", "firstName": "Span"}}
    )

    spans = {span.name: span for span in span_exporter.get_finished_spans()}
    assert spans["ghl.webhook.dispatch"].attributes["ghl.event"] == "contact.create"
    assert spans["ghl.contact.create"].attributes["external_id"] == "c-span"

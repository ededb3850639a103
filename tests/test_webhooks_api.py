from __future__ import annotations

import inspect
import json
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from ghl_sync.core.database import get_db
from ghl_sync.integrations.config import WEBHOOK_SECRET_KEY
from ghl_sync.integrations.models import InstallationConfig
from ghl_sync.jobs.queue import PROCESS_WEBHOOK_EVENT
from ghl_sync.main import app
from ghl_sync.webhooks.api import receive_ghl_webhook
from ghl_sync.webhooks.signature import SIGNATURE_HEADER, compute_signature


SECRET = "stored-webhook-secret"


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    db_session.add(InstallationConfig(name=WEBHOOK_SECRET_KEY, value=SECRET))
    db_session.commit()

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _post(client: TestClient, payload: dict, secret: str | None = SECRET, **headers: str):
    body = json.dumps(payload).encode("utf-8")
    if secret is not None:
        headers[SIGNATURE_HEADER] = compute_signature(secret, body)
    return client.post("/webhooks/ghl", content=body, headers={"content-type": "application/json", **headers})


def test_valid_webhook_is_acknowledged_and_enqueued(client: TestClient, job_queue) -> None:
    response = _post(
        client,
        {"type": "InboundMessage", "locationId": "loc-1", "message": {"id": "m1"}},
        **{"x-correlation-id": "corr-webhook-1"},
    )

    assert response.status_code == 200
    assert response.json()["event"] == "conversation.message"
    jobs = job_queue.named(PROCESS_WEBHOOK_EVENT)
    assert len(jobs) == 1
    assert jobs[0].kwargs["correlation_id"] == "corr-webhook-1"


def test_wrong_secret_returns_401_and_enqueues_nothing(client: TestClient, job_queue) -> None:
    response = _post(client, {"type": "ContactCreate", "locationId": "loc-1"}, secret="not-the-secret")

    assert response.status_code == 401
    assert job_queue.jobs == []


def test_missing_signature_returns_401(client: TestClient, job_queue) -> None:
    response = _post(client, {"type": "ContactCreate"}, secret=None)

    assert response.status_code == 401
    assert job_queue.jobs == []


def test_unknown_event_is_acknowledged_without_work(client: TestClient, job_queue) -> None:
    response = _post(client, {"type": "CalendarEventCreate", "locationId": "loc-1"})

    assert response.status_code == 200
    assert response.json()["event"] == "ignored"
    assert job_queue.jobs == []


def test_webhook_handler_runs_off_the_event_loop() -> None:
    assert not inspect.iscoroutinefunction(receive_ghl_webhook)

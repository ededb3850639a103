from __future__ import annotations

import json

import pytest

from ghl_sync.errors import SignatureError
from ghl_sync.integrations.config import load_integration_config
from ghl_sync.jobs.queue import PROCESS_WEBHOOK_EVENT, InMemoryJobQueue
from ghl_sync.webhooks.events import CanonicalEvent, parse_event
from ghl_sync.webhooks.gateway import WebhookGateway
from ghl_sync.webhooks.signature import SignatureVerifier, compute_signature


def _body(payload: dict) -> bytes:
    return json.dumps(payload).encode("utf-8")


def test_verifier_accepts_primary_and_fallback_secrets() -> None:
    verifier = SignatureVerifier(["new-secret", "old-secret"])
    body = _body({"type": "ContactCreate"})

    assert verifier.is_valid(body, compute_signature("new-secret", body))
    assert verifier.is_valid(body, compute_signature("old-secret", body))
    assert not verifier.is_valid(body, compute_signature("other", body))


def test_verifier_rejects_missing_signature_and_unconfigured_secret() -> None:
    body = _body({"type": "ContactCreate"})

    with pytest.raises(SignatureError, match="missing signature"):
        SignatureVerifier(["secret"]).verify(body, None)
    with pytest.raises(SignatureError, match="not configured"):
        SignatureVerifier([]).verify(body, compute_signature("secret", body))


def test_signature_covers_raw_bytes() -> None:
    verifier = SignatureVerifier(["secret"])
    signed = b'{"type": "ContactCreate"}'
    reformatted = b'{"type":"ContactCreate"}'

    assert not verifier.is_valid(reformatted, compute_signature("secret", signed))


def test_config_collects_stored_previous_and_fallback_secrets(settings) -> None:
    settings.ghl_webhook_secret_fallback = "fallback-secret"
    config = load_integration_config(None, settings)

    assert config.webhook_secrets == ("primary-secret", "fallback-secret")


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("ContactCreate", CanonicalEvent.CONTACT_CREATE),
        ("InboundMessage", CanonicalEvent.CONVERSATION_MESSAGE),
        ("OutboundMessage", CanonicalEvent.CONVERSATION_MESSAGE),
        ("OpportunityStageUpdate", CanonicalEvent.OPPORTUNITY_UPDATE),
        ("OpportunityStatusUpdate", CanonicalEvent.OPPORTUNITY_STATUS_CHANGE),
        ("AppUninstall", CanonicalEvent.APP_UNINSTALLED),
        ("contact.update", CanonicalEvent.CONTACT_UPDATE),
        ("TaskCreate", None),
        (None, None),
    ],
)
def test_parse_event_maps_legacy_names(raw, expected) -> None:
    assert parse_event(raw) is expected


def test_gateway_enqueues_verified_event_without_framework_keys() -> None:
    queue = InMemoryJobQueue()
    gateway = WebhookGateway(SignatureVerifier(["secret"]), queue)
    body = _body({"type": "ContactCreate", "locationId": "loc-1", "controller": "x", "action": "y", "id": "c1"})

    result = gateway.handle(body, compute_signature("secret", body))

    assert result.enqueued is True
    assert result.event is CanonicalEvent.CONTACT_CREATE
    assert len(queue.jobs) == 1
    job = queue.jobs[0]
    assert job.name == PROCESS_WEBHOOK_EVENT
    assert job.kwargs["event"] == "contact.create"
    assert "controller" not in job.kwargs["params"]
    assert "action" not in job.kwargs["params"]
    assert job.kwargs["params"]["locationId"] == "loc-1"


def test_gateway_rejects_bad_signature_without_enqueueing() -> None:
    queue = InMemoryJobQueue()
    gateway = WebhookGateway(SignatureVerifier(["secret"]), queue)
    body = _body({"type": "ContactCreate"})

    with pytest.raises(SignatureError):
        gateway.handle(body, compute_signature("wrong", body))
    assert queue.jobs == []


def test_gateway_ignores_unknown_event_and_malformed_body() -> None:
    queue = InMemoryJobQueue()
    gateway = WebhookGateway(SignatureVerifier(["secret"]), queue)

    unknown = _body({"type": "TaskCreate"})
    result = gateway.handle(unknown, compute_signature("secret", unknown))
    assert result.enqueued is False
    assert result.raw_event == "TaskCreate"

    malformed = b"{not json"
    result = gateway.handle(malformed, compute_signature("secret", malformed))
    assert result.enqueued is False
    assert queue.jobs == []

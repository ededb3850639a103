from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace

from ghl_sync.context import get_correlation_id
from ghl_sync.errors import SignatureError
from ghl_sync.jobs.queue import PROCESS_WEBHOOK_EVENT, JobQueue
from ghl_sync.metrics import observe_webhook
from ghl_sync.sync.payloads import extract_location_id
from ghl_sync.webhooks.events import CanonicalEvent, parse_event, raw_event_type
from ghl_sync.webhooks.signature import SignatureVerifier


logger = logging.getLogger(__name__)
tracer = trace.get_tracer("ghl_sync.webhooks.gateway")

_FRAMEWORK_KEYS = {"controller", "action"}


@dataclass(slots=True)
class GatewayResult:
    event: CanonicalEvent | None
    raw_event: str | None
    enqueued: bool


class WebhookGateway:
    """Verify, classify and enqueue. Never runs synchronization inline."""

    def __init__(self, verifier: SignatureVerifier, queue: JobQueue) -> None:
        self.verifier = verifier
        self.queue = queue

    def handle(self, body: bytes, signature: str | None) -> GatewayResult:
        with tracer.start_as_current_span("ghl.webhook.ingest") as span:
            try:
                self.verifier.verify(body, signature)
            except SignatureError as exc:
                observe_webhook("unknown", "rejected")
                logger.warning("webhook.rejected", extra={"error": str(exc)})
                raise

            params = _parse_body(body)
            if params is None:
                observe_webhook("unknown", "malformed")
                logger.warning("webhook.malformed_body")
                return GatewayResult(event=None, raw_event=None, enqueued=False)

            raw = raw_event_type(params)
            event = parse_event(raw)
            span.set_attribute("ghl.event", raw or "")
            location_id = extract_location_id(params)
            if event is None:
                observe_webhook("unknown", "ignored")
                logger.info("webhook.unhandled_event", extra={"event": raw, "location_id": location_id})
                return GatewayResult(event=None, raw_event=raw, enqueued=False)

            self.queue.enqueue(
                PROCESS_WEBHOOK_EVENT,
                event=event.value,
                params={key: value for key, value in params.items() if key not in _FRAMEWORK_KEYS},
                correlation_id=get_correlation_id(),
            )
            observe_webhook(event.value, "enqueued")
            logger.info("webhook.received", extra={"event": event.value, "location_id": location_id})
            return GatewayResult(event=event, raw_event=raw, enqueued=True)


def _parse_body(body: bytes) -> dict[str, Any] | None:
    try:
        parsed = json.loads(body or b"{}")
    except (ValueError, UnicodeDecodeError):
        return None
    return parsed if isinstance(parsed, dict) else None

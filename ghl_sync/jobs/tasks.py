from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from ghl_sync.billing.service import subscription_service
from ghl_sync.context import reset_correlation_id, set_correlation_id
from ghl_sync.core.celery_app import celery_app
from ghl_sync.core.database import SessionLocal
from ghl_sync.errors import ExternalApiError
from ghl_sync.integrations.client import ClientFactory, build_client
from ghl_sync.integrations.config import IntegrationConfig, load_integration_config
from ghl_sync.integrations.repository import find_enabled_connection
from ghl_sync.integrations.tokens import TokenLifecycleManager
from ghl_sync.jobs.queue import (
    ENRICH_CONTACT,
    IMPORT_CONTACTS,
    PROCESS_WEBHOOK_EVENT,
    PUSH_CONTACT,
    REFRESH_EXPIRING_TOKENS,
    RESET_MONTHLY_USAGE,
    SEND_MESSAGE,
)
from ghl_sync.metrics import observe_job
from ghl_sync.sync.contacts import ContactSyncEngine
from ghl_sync.sync.messages import MessageSyncEngine
from ghl_sync.sync.models import Contact, Conversation, Message
from ghl_sync.webhooks.dispatcher import WebhookDispatcher


logger = logging.getLogger(__name__)
tracer = trace.get_tracer("ghl_sync.jobs")

TRANSIENT_ERRORS = (OperationalError, ExternalApiError)


@contextmanager
def _job_scope(job_type: str, correlation_id: str | None) -> Iterator[Session]:
    token = set_correlation_id(correlation_id)
    started = time.perf_counter()
    session = SessionLocal()
    final_status = "Failed"
    logger.info("job.started", extra={"job_type": job_type, "status": "Running"})
    try:
        with tracer.start_as_current_span("ghl.job.run") as span:
            span.set_attribute("job_type", job_type)
            span.set_attribute("correlation_id", correlation_id or "")
            yield session
        final_status = "Succeeded"
    finally:
        duration = time.perf_counter() - started
        observe_job(job_type, final_status, duration)
        logger.info(
            "job.finished",
            extra={"job_type": job_type, "status": final_status, "duration_ms": round(duration * 1000, 2)},
        )
        session.close()
        reset_correlation_id(token)


# Task bodies take the session and collaborators explicitly so they run the same under
# Celery and in tests.


def run_process_webhook_event(
    session: Session,
    config: IntegrationConfig,
    event: str,
    params: dict[str, Any],
    *,
    client_factory: ClientFactory | None = None,
) -> Any:
    return WebhookDispatcher(session, config, client_factory=client_factory).dispatch(event, params)


def run_enrich_contact(
    session: Session,
    config: IntegrationConfig,
    account_id: uuid.UUID,
    contact_id: uuid.UUID,
    external_contact_id: str,
    *,
    client_factory: ClientFactory | None = None,
) -> Contact | None:
    """Best-effort: any failure leaves the placeholder as it is."""
    try:
        connection = find_enabled_connection(session, account_id)
        contact = session.get(Contact, contact_id)
        if connection is None or contact is None:
            return None
        client = (client_factory or (lambda c: build_client(c, config)))(connection)
        return ContactSyncEngine(session, connection, config, client).enrich(contact, external_contact_id)
    except Exception as exc:
        session.rollback()
        logger.warning(
            "contact_enrichment.failed",
            extra={"account_id": str(account_id), "contact_id": str(contact_id), "error": str(exc)},
        )
        return None


@celery_app.task(
    name=PROCESS_WEBHOOK_EVENT,
    bind=True,
    autoretry_for=TRANSIENT_ERRORS,
    retry_backoff=True,
    retry_backoff_max=600,
    max_retries=5,
)
def process_webhook_event(self, event: str, params: dict[str, Any], correlation_id: str | None = None) -> None:  # type: ignore[no-untyped-def]
    with _job_scope("process_webhook_event", correlation_id) as session:
        run_process_webhook_event(session, load_integration_config(session), event, params)


@celery_app.task(name=ENRICH_CONTACT)
def enrich_contact(account_id: str, contact_id: str, external_contact_id: str, correlation_id: str | None = None) -> None:
    with _job_scope("enrich_contact", correlation_id) as session:
        run_enrich_contact(
            session,
            load_integration_config(session),
            uuid.UUID(account_id),
            uuid.UUID(contact_id),
            external_contact_id,
        )


@celery_app.task(name=PUSH_CONTACT, bind=True, autoretry_for=TRANSIENT_ERRORS, retry_backoff=True, max_retries=5)
def push_contact(self, account_id: str, contact_id: str, correlation_id: str | None = None) -> None:  # type: ignore[no-untyped-def]
    with _job_scope("push_contact", correlation_id) as session:
        config = load_integration_config(session)
        connection = find_enabled_connection(session, uuid.UUID(account_id))
        contact = session.get(Contact, uuid.UUID(contact_id))
        if connection is None or contact is None:
            return
        ContactSyncEngine(session, connection, config, build_client(connection, config)).push_to_external(contact)


@celery_app.task(name=SEND_MESSAGE, bind=True, autoretry_for=TRANSIENT_ERRORS, retry_backoff=True, max_retries=5)
def send_message(self, account_id: str, message_id: str, correlation_id: str | None = None) -> None:  # type: ignore[no-untyped-def]
    with _job_scope("send_message", correlation_id) as session:
        config = load_integration_config(session)
        connection = find_enabled_connection(session, uuid.UUID(account_id))
        message = session.get(Message, uuid.UUID(message_id))
        if connection is None or message is None:
            return
        conversation = session.get(Conversation, message.conversation_id)
        if conversation is None:
            return
        engine = MessageSyncEngine(session, connection, config, build_client(connection, config))
        engine.send_message(conversation, message)


@celery_app.task(name=IMPORT_CONTACTS)
def import_contacts(account_id: str, correlation_id: str | None = None) -> dict[str, int] | None:
    with _job_scope("import_contacts", correlation_id) as session:
        config = load_integration_config(session)
        connection = find_enabled_connection(session, uuid.UUID(account_id))
        if connection is None:
            return None
        return ContactSyncEngine(session, connection, config, build_client(connection, config)).import_all()


@celery_app.task(name=REFRESH_EXPIRING_TOKENS)
def refresh_expiring_tokens(window_minutes: int | None = None, correlation_id: str | None = None) -> dict[str, int]:
    with _job_scope("refresh_expiring_tokens", correlation_id) as session:
        manager = TokenLifecycleManager(session, load_integration_config(session))
        return manager.sweep(window_minutes).to_dict()


@celery_app.task(name=RESET_MONTHLY_USAGE)
def reset_monthly_usage(correlation_id: str | None = None) -> dict[str, int]:
    with _job_scope("reset_monthly_usage", correlation_id) as session:
        return subscription_service.reset_all_monthly_usage(session)

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from opentelemetry import trace
from sqlalchemy.orm import Session

from ghl_sync.billing.service import subscription_service
from ghl_sync.context import account_scope
from ghl_sync.integrations.client import ClientFactory, build_client
from ghl_sync.integrations.config import IntegrationConfig
from ghl_sync.integrations.models import CONNECTION_DISABLED, Connection
from ghl_sync.integrations.repository import find_enabled_connection, find_enabled_connection_by_reference
from ghl_sync.jobs.queue import JobQueue, get_job_queue
from ghl_sync.metrics import observe_webhook
from ghl_sync.otel import mark_span_error
from ghl_sync.sync.contacts import ContactSyncEngine
from ghl_sync.sync.messages import MessageSyncEngine
from ghl_sync.sync.opportunities import OpportunitySyncEngine
from ghl_sync.sync.payloads import extract_location_id
from ghl_sync.webhooks.events import CanonicalEvent, parse_event
from ghl_sync.workspace.repository import find_account_by_ghl_ids


logger = logging.getLogger(__name__)
tracer = trace.get_tracer("ghl_sync.webhooks.dispatcher")


def _company_id(params: dict[str, Any]) -> str | None:
    data = params.get("data") if isinstance(params.get("data"), dict) else {}
    value = params.get("companyId") or data.get("companyId")
    return str(value) if value else None


class WebhookDispatcher:
    """Routes a canonical event to the sync engine or lifecycle handler that owns it."""

    def __init__(
        self,
        session: Session,
        config: IntegrationConfig,
        *,
        client_factory: ClientFactory | None = None,
        queue: JobQueue | None = None,
    ) -> None:
        self.session = session
        self.config = config
        self.client_factory = client_factory or (lambda connection: build_client(connection, config))
        self.queue = queue or get_job_queue()

    def dispatch(self, event_name: str, params: dict[str, Any]) -> Any:
        event = parse_event(event_name)
        if event is None:
            logger.info("webhook.unhandled_event", extra={"event": event_name})
            return None

        with tracer.start_as_current_span("ghl.webhook.dispatch") as span:
            span.set_attribute("ghl.event", event.value)
            try:
                result = self._route(event, params)
            except Exception as exc:
                self.session.rollback()
                mark_span_error(span, exc)
                observe_webhook(event.value, "failed")
                logger.error("webhook.processing_failed", extra={"event": event.value, "error": str(exc)})
                raise
        observe_webhook(event.value, "processed")
        return result

    def _route(self, event: CanonicalEvent, params: dict[str, Any]) -> Any:
        if event is CanonicalEvent.APP_INSTALLED:
            return self.handle_app_installed(params)
        if event is CanonicalEvent.APP_UNINSTALLED:
            return self.handle_app_uninstalled(params)

        location_id = extract_location_id(params)
        connection = self._resolve_connection(location_id, _company_id(params))
        if connection is None:
            logger.warning("webhook.no_connection", extra={"event": event.value, "location_id": location_id})
            return None

        with account_scope(connection.account_id):
            return self._handlers()[event](connection, params)

    def _handlers(self) -> dict[CanonicalEvent, Callable[[Connection, dict[str, Any]], Any]]:
        return {
            CanonicalEvent.CONTACT_CREATE: lambda c, p: self._contacts(c).create_from_external(p),
            CanonicalEvent.CONTACT_UPDATE: lambda c, p: self._contacts(c).update_from_external(p),
            CanonicalEvent.CONTACT_DELETE: lambda c, p: self._contacts(c).delete_from_external(p),
            CanonicalEvent.CONVERSATION_MESSAGE: lambda c, p: self._messages(c).process_message(p),
            CanonicalEvent.CONVERSATION_STATUS: lambda c, p: self._messages(c).sync_conversation_status(p),
            CanonicalEvent.OPPORTUNITY_CREATE: lambda c, p: self._opportunities(c).create_from_external(p),
            CanonicalEvent.OPPORTUNITY_UPDATE: lambda c, p: self._opportunities(c).update_from_external(p),
            CanonicalEvent.OPPORTUNITY_DELETE: lambda c, p: self._opportunities(c).delete_from_external(p),
            CanonicalEvent.OPPORTUNITY_STATUS_CHANGE: lambda c, p: self._opportunities(c).status_change_from_external(p),
            CanonicalEvent.LOCATION_CREATE: self.handle_location_create,
            CanonicalEvent.LOCATION_UPDATE: self.handle_location_update,
        }

    def _contacts(self, connection: Connection) -> ContactSyncEngine:
        return ContactSyncEngine(self.session, connection, self.config, self.client_factory(connection))

    def _messages(self, connection: Connection) -> MessageSyncEngine:
        return MessageSyncEngine(self.session, connection, self.config, self.client_factory(connection), self.queue)

    def _opportunities(self, connection: Connection) -> OpportunitySyncEngine:
        return OpportunitySyncEngine(self.session, connection, self.config, self.queue)

    def _resolve_connection(self, location_id: str | None, company_id: str | None) -> Connection | None:
        connection = find_enabled_connection_by_reference(self.session, location_id)
        if connection is not None:
            return connection
        account = find_account_by_ghl_ids(self.session, location_id, company_id)
        if account is None:
            return None
        return find_enabled_connection(self.session, account.id)

    # lifecycle

    def handle_app_installed(self, params: dict[str, Any]) -> Any:
        location_id = extract_location_id(params)
        company_id = _company_id(params)
        account = find_account_by_ghl_ids(self.session, location_id, company_id)
        if account is None:
            logger.info("webhook.app_installed_awaiting_oauth", extra={"location_id": location_id})
            return None

        subscription = subscription_service.get_for_account(self.session, account.id)
        if subscription is not None and subscription.status in {"cancelled", "suspended"}:
            subscription_service.activate(self.session, subscription)
            self.session.commit()
        logger.info("webhook.app_installed_existing", extra={"account_id": str(account.id), "location_id": location_id})
        return account

    def handle_app_uninstalled(self, params: dict[str, Any]) -> Any:
        location_id = extract_location_id(params)
        connection = self._resolve_connection(location_id, _company_id(params))
        if connection is None:
            logger.info("webhook.app_uninstalled_unknown", extra={"location_id": location_id})
            return None

        connection.status = CONNECTION_DISABLED
        self.session.add(connection)
        subscription = subscription_service.get_for_account(self.session, connection.account_id)
        if subscription is not None and subscription.status != "cancelled":
            subscription_service.suspend(self.session, subscription)
        self.session.commit()
        logger.info(
            "webhook.app_uninstalled",
            extra={"account_id": str(connection.account_id), "connection_id": str(connection.id)},
        )
        return connection

    def handle_location_create(self, connection: Connection, params: dict[str, Any]) -> Any:
        subscription = subscription_service.get_for_account(self.session, connection.account_id)
        if subscription is None:
            return None
        subscription_service.record_location_added(self.session, subscription, extract_location_id(params))
        self.session.commit()
        return subscription

    def handle_location_update(self, connection: Connection, params: dict[str, Any]) -> Any:
        location = params.get("location") or params.get("data") or {}
        logger.info(
            "webhook.location_updated",
            extra={"account_id": str(connection.account_id), "location_id": location.get("id")},
        )
        return None

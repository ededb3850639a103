from __future__ import annotations

import logging
import uuid
from typing import Any

from opentelemetry import trace
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ghl_sync.core.clock import utcnow
from ghl_sync.errors import ExternalApiError
from ghl_sync.integrations.client import GhlClient
from ghl_sync.integrations.config import IntegrationConfig
from ghl_sync.integrations.models import Connection
from ghl_sync.metrics import observe_sync
from ghl_sync.sync.lookups import (
    PENDING_ENRICHMENT,
    contact_identifier,
    external_contact_id,
    find_contact_by_email_or_phone,
    find_contact_by_external_id,
)
from ghl_sync.sync.models import Contact
from ghl_sync.sync.payloads import ContactPayload, normalize_contact


logger = logging.getLogger(__name__)
tracer = trace.get_tracer("ghl_sync.sync.contacts")


class ContactSyncEngine:
    """Reconciles contacts between a tenant workspace and its GHL location."""

    def __init__(
        self,
        session: Session,
        connection: Connection,
        config: IntegrationConfig,
        client: GhlClient | None = None,
    ) -> None:
        self.session = session
        self.config = config
        self.client = client
        self.account_id: uuid.UUID = connection.account_id
        self.location_id = connection.reference_id

    # inbound

    def create_from_external(self, params: dict[str, Any]) -> Contact | None:
        payload = normalize_contact(params)
        if not payload.external_id:
            return None

        existing = find_contact_by_external_id(self.session, self.account_id, payload.external_id)
        if existing is not None:
            return self._apply_update(existing, payload)

        with tracer.start_as_current_span("ghl.contact.create") as span:
            span.set_attribute("external_id", payload.external_id)
            contact = Contact(
                account_id=self.account_id,
                identifier=contact_identifier(payload.external_id),
                name=payload.name,
                email=payload.email,
                phone_number=payload.phone_number,
                custom_attributes=dict(payload.custom_attributes),
                additional_attributes=dict(payload.additional_attributes),
            )
            self.session.add(contact)
            try:
                self.session.commit()
            except IntegrityError as exc:
                self.session.rollback()
                return self._handle_conflict(payload, exc)

        observe_sync("contact", "create", "created")
        logger.info(
            "contact_sync.created",
            extra={"account_id": str(self.account_id), "contact_id": str(contact.id), "external_id": payload.external_id},
        )
        return contact

    def update_from_external(self, params: dict[str, Any]) -> Contact | None:
        payload = normalize_contact(params)
        if not payload.external_id:
            return None

        contact = find_contact_by_external_id(self.session, self.account_id, payload.external_id)
        if contact is None:
            logger.info(
                "contact_sync.update_missing_creating",
                extra={"account_id": str(self.account_id), "external_id": payload.external_id},
            )
            return self.create_from_external(params)
        return self._apply_update(contact, payload)

    def delete_from_external(self, params: dict[str, Any]) -> Contact | None:
        payload = normalize_contact(params)
        if not payload.external_id:
            return None

        contact = find_contact_by_external_id(self.session, self.account_id, payload.external_id)
        if contact is None:
            logger.info(
                "contact_sync.delete_missing",
                extra={"account_id": str(self.account_id), "external_id": payload.external_id},
            )
            return None

        now = utcnow()
        contact.archived = True
        contact.archived_at = now
        contact.custom_attributes = {
            **(contact.custom_attributes or {}),
            "ghl_deleted": True,
            "ghl_deleted_at": now.isoformat(),
        }
        self.session.add(contact)
        self.session.commit()
        observe_sync("contact", "delete", "archived")
        logger.info(
            "contact_sync.archived",
            extra={"account_id": str(self.account_id), "contact_id": str(contact.id), "external_id": payload.external_id},
        )
        return contact

    # outbound

    def push_to_external(self, contact: Contact) -> dict[str, Any] | None:
        """Create or update the GHL copy of `contact`.

        Retryable API failures propagate so the calling job is retried; anything else is
        logged and reported as None.
        """
        if self.client is None:
            raise RuntimeError("push_to_external requires a GHL client")

        external_id = external_contact_id(contact)
        body = self._outbound_body(contact)
        try:
            if external_id:
                _, response = self.client.request("PUT", f"/contacts/{external_id}", body)
                logger.info(
                    "contact_sync.pushed",
                    extra={"account_id": str(self.account_id), "contact_id": str(contact.id), "external_id": external_id},
                )
                observe_sync("contact", "push", "updated")
                return response

            _, response = self.client.request("POST", "/contacts/", body)
        except ExternalApiError as exc:
            observe_sync("contact", "push", "failed")
            logger.error(
                "contact_sync.push_failed",
                extra={"account_id": str(self.account_id), "contact_id": str(contact.id), "error": str(exc)},
            )
            if exc.retryable:
                raise
            return None

        new_id = str(((response or {}).get("contact") or {}).get("id") or "")
        if new_id:
            contact.identifier = contact_identifier(new_id)
            contact.custom_attributes = {**(contact.custom_attributes or {}), "ghl_contact_id": new_id}
            self.session.add(contact)
            self.session.commit()
            logger.info(
                "contact_sync.pushed",
                extra={"account_id": str(self.account_id), "contact_id": str(contact.id), "external_id": new_id},
            )
        observe_sync("contact", "push", "created")
        return response

    def import_all(self) -> dict[str, int]:
        if self.client is None:
            raise RuntimeError("import_all requires a GHL client")

        records = self._fetch_all()
        imported = 0
        skipped = 0
        for record in records:
            external_id = str(record.get("id") or "")
            try:
                existing = find_contact_by_external_id(self.session, self.account_id, external_id) if external_id else None
                if existing is not None:
                    self._apply_update(existing, normalize_contact(record))
                    skipped += 1
                else:
                    self.create_from_external({"contact": record, "locationId": self.location_id})
                    imported += 1
            except Exception as exc:
                self.session.rollback()
                logger.error(
                    "contact_sync.import_item_failed",
                    extra={"account_id": str(self.account_id), "external_id": external_id, "error": str(exc)},
                )

        result = {"imported": imported, "skipped": skipped, "total": len(records)}
        logger.info("contact_sync.import_completed", extra={"account_id": str(self.account_id), **result})
        return result

    def _fetch_all(self) -> list[dict[str, Any]]:
        assert self.client is not None
        limit = self.config.contact_page_size
        offset = 0
        records: list[dict[str, Any]] = []
        while True:
            _, response = self.client.request(
                "GET",
                "/contacts/",
                query={"locationId": self.location_id, "limit": limit, "offset": offset},
            )
            batch = [item for item in (response or {}).get("contacts") or [] if isinstance(item, dict)]
            records.extend(batch)
            if len(batch) < limit:
                return records
            offset += limit

    def _outbound_body(self, contact: Contact) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if contact.name:
            first, _, last = contact.name.partition(" ")
            body["firstName"] = first
            if last:
                body["lastName"] = last
        if contact.email:
            body["email"] = contact.email
        if contact.phone_number:
            body["phone"] = contact.phone_number
        body["locationId"] = self.location_id
        tags = (contact.custom_attributes or {}).get("ghl_tags")
        if tags:
            body["tags"] = tags
        return body

    # merging

    def _apply_update(self, contact: Contact, payload: ContactPayload) -> Contact:
        contact_id = contact.id
        if payload.name:
            contact.name = payload.name
        if payload.email:
            contact.email = payload.email
        if payload.phone_number:
            contact.phone_number = payload.phone_number
        contact.custom_attributes = {**(contact.custom_attributes or {}), **payload.custom_attributes}
        contact.additional_attributes = {**(contact.additional_attributes or {}), **payload.additional_attributes}
        self.session.add(contact)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            observe_sync("contact", "update", "invalid")
            logger.error(
                "contact_sync.update_rejected",
                extra={"account_id": str(self.account_id), "contact_id": str(contact_id), "error": str(exc.orig)},
            )
            return self.session.get(Contact, contact_id) or contact

        observe_sync("contact", "update", "updated")
        logger.info(
            "contact_sync.updated",
            extra={"account_id": str(self.account_id), "contact_id": str(contact_id), "external_id": payload.external_id},
        )
        return contact

    def _handle_conflict(self, payload: ContactPayload, exc: IntegrityError) -> Contact | None:
        logger.warning(
            "contact_sync.duplicate",
            extra={"account_id": str(self.account_id), "external_id": payload.external_id, "error": str(exc.orig)},
        )
        assert payload.external_id is not None

        # a concurrent delivery may have bound the id first
        bound = find_contact_by_external_id(self.session, self.account_id, payload.external_id)
        if bound is not None:
            return self._apply_update(bound, payload)

        contact = find_contact_by_email_or_phone(self.session, self.account_id, payload.email, payload.phone_number)
        if contact is None:
            observe_sync("contact", "create", "conflict_unresolved")
            return None

        contact.custom_attributes = {**(contact.custom_attributes or {}), **payload.custom_attributes}
        if not contact.identifier:
            contact.identifier = contact_identifier(payload.external_id)
        self.session.add(contact)
        self.session.commit()
        observe_sync("contact", "create", "linked")
        logger.info(
            "contact_sync.linked",
            extra={"account_id": str(self.account_id), "contact_id": str(contact.id), "external_id": payload.external_id},
        )
        return contact

    def enrich(self, contact: Contact, external_id: str) -> Contact:
        """Best-effort refresh of a placeholder contact from the GHL API."""
        if self.client is None:
            raise RuntimeError("enrich requires a GHL client")
        _, response = self.client.request("GET", f"/contacts/{external_id}")
        data = (response or {}).get("contact") or response or {}
        updated = self.update_from_external({"contact": data}) or contact
        custom = dict(updated.custom_attributes or {})
        if custom.pop(PENDING_ENRICHMENT, None) is not None:
            updated.custom_attributes = custom
            self.session.add(updated)
            self.session.commit()
        return updated

from __future__ import annotations

import logging
import re
import uuid
from typing import Any

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ghl_sync.core.clock import utcnow
from ghl_sync.integrations.config import IntegrationConfig
from ghl_sync.integrations.models import Connection
from ghl_sync.jobs.queue import ENRICH_CONTACT, JobQueue, get_job_queue
from ghl_sync.metrics import observe_sync
from ghl_sync.sync.lookups import (
    create_placeholder_contact,
    default_inbox,
    find_contact_by_external_id,
    find_conversation,
    opportunity_identifier,
)
from ghl_sync.sync.models import Contact, Conversation, Label, Message
from ghl_sync.sync.payloads import OpportunityPayload, normalize_opportunity


logger = logging.getLogger(__name__)
tracer = trace.get_tracer("ghl_sync.sync.opportunities")

OPPORTUNITY_TAG = "ghl-opportunity"
_LABEL_UNSAFE_RE = re.compile(r"[^a-z0-9\-_]")
_DASHES_RE = re.compile(r"-{2,}")

STATUS_MAP = {
    "": "open",
    "open": "open",
    "active": "open",
    "won": "resolved",
    "completed": "resolved",
    "lost": "resolved",
    "abandoned": "resolved",
    "pending": "pending",
}


def slugify_label(name: str | None) -> str:
    if not name:
        return ""
    return _DASHES_RE.sub("-", _LABEL_UNSAFE_RE.sub("-", name.lower()))[:50]


def map_status(status: str | None) -> str | None:
    return STATUS_MAP.get((status or "").lower())


def is_derived_label(label: str) -> bool:
    return label.startswith(("pipeline:", "stage:")) or label == OPPORTUNITY_TAG


def derived_labels(payload: OpportunityPayload) -> list[str]:
    labels = []
    if payload.pipeline_name:
        labels.append(f"pipeline:{slugify_label(payload.pipeline_name)}")
    if payload.stage_name:
        labels.append(f"stage:{slugify_label(payload.stage_name)}")
    labels.append(OPPORTUNITY_TAG)
    return labels


def merge_labels(existing: list[str], derived: list[str]) -> list[str]:
    merged: list[str] = []
    for label in [*(item for item in existing if not is_derived_label(item)), *derived]:
        if label not in merged:
            merged.append(label)
    return merged


def _drop_blank(values: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in values.items() if value not in (None, "")}


class OpportunitySyncEngine:
    """Projects GHL sales opportunities onto dedicated conversations keyed `opp:<id>`."""

    def __init__(
        self,
        session: Session,
        connection: Connection,
        config: IntegrationConfig,
        queue: JobQueue | None = None,
    ) -> None:
        self.session = session
        self.config = config
        self.queue = queue or get_job_queue()
        self.account_id: uuid.UUID = connection.account_id
        self.location_id = connection.reference_id

    def create_from_external(self, params: dict[str, Any]) -> Conversation | None:
        payload = normalize_opportunity(params)
        if not payload.external_id:
            return None

        if self._find(payload.external_id) is not None:
            return self.update_from_external(params)

        with tracer.start_as_current_span("ghl.opportunity.create") as span:
            span.set_attribute("external_id", payload.external_id)
            contact, placeholder = self._resolve_contact(payload)
            if contact is None:
                logger.warning(
                    "opportunity_sync.contact_missing",
                    extra={"account_id": str(self.account_id), "external_id": payload.external_id},
                )
                return None

            inbox = default_inbox(self.session, self.account_id)
            conversation = Conversation(
                account_id=self.account_id,
                inbox_id=inbox.id,
                contact_id=contact.id,
                identifier=opportunity_identifier(payload.external_id),
                status=map_status(payload.status) or "open",
                custom_attributes=self._custom_attributes(payload),
                additional_attributes=self._additional_attributes(payload),
                labels=[],
            )
            self.session.add(conversation)
            try:
                self.session.flush()
            except IntegrityError:
                self.session.rollback()
                return self.update_from_external(params)

            self._apply_labels(conversation, payload)
            self._add_note(conversation, payload, "created", self._created_note(payload))
            self.session.commit()

        if placeholder:
            self.queue.enqueue(
                ENRICH_CONTACT,
                account_id=str(self.account_id),
                contact_id=str(contact.id),
                external_contact_id=payload.contact_id,
            )
        observe_sync("opportunity", "create", "created")
        logger.info(
            "opportunity_sync.created",
            extra={
                "account_id": str(self.account_id),
                "conversation_id": str(conversation.id),
                "external_id": payload.external_id,
            },
        )
        return conversation

    def update_from_external(self, params: dict[str, Any]) -> Conversation | None:
        payload = normalize_opportunity(params)
        if not payload.external_id:
            return None

        conversation = self._find(payload.external_id)
        if conversation is None:
            logger.info(
                "opportunity_sync.update_missing_creating",
                extra={"account_id": str(self.account_id), "external_id": payload.external_id},
            )
            return self.create_from_external(params)

        old_stage = (conversation.custom_attributes or {}).get("ghl_opportunity_stage")
        conversation.custom_attributes = {**(conversation.custom_attributes or {}), **self._custom_attributes(payload)}
        conversation.additional_attributes = {
            **(conversation.additional_attributes or {}),
            **self._additional_attributes(payload),
        }
        new_status = map_status(payload.status) if payload.status is not None else None
        if new_status is not None:
            conversation.status = new_status
        self._apply_labels(conversation, payload)

        new_stage = payload.stage
        if old_stage and new_stage and old_stage != new_stage:
            self._add_note(
                conversation,
                payload,
                "stage_changed",
                f"Opportunity stage changed: {old_stage} → {new_stage}",
            )
        self.session.add(conversation)
        self.session.commit()

        observe_sync("opportunity", "update", "updated")
        logger.info(
            "opportunity_sync.updated",
            extra={
                "account_id": str(self.account_id),
                "conversation_id": str(conversation.id),
                "external_id": payload.external_id,
            },
        )
        return conversation

    def delete_from_external(self, params: dict[str, Any]) -> Conversation | None:
        payload = normalize_opportunity(params)
        if not payload.external_id:
            return None

        conversation = self._find(payload.external_id)
        if conversation is None:
            logger.info(
                "opportunity_sync.delete_missing",
                extra={"account_id": str(self.account_id), "external_id": payload.external_id},
            )
            return None

        self._add_note(conversation, payload, "deleted", f"Opportunity deleted: {payload.name or payload.external_id}")
        conversation.status = "resolved"
        self.session.add(conversation)
        self.session.commit()
        observe_sync("opportunity", "delete", "resolved")
        return conversation

    def status_change_from_external(self, params: dict[str, Any]) -> Conversation | None:
        payload = normalize_opportunity(params)
        if not payload.external_id:
            return None

        conversation = self._find(payload.external_id)
        if conversation is None:
            return None

        new_status = map_status(payload.status)
        if new_status is None:
            return conversation

        old_status = conversation.status
        conversation.status = new_status
        conversation.custom_attributes = {
            **(conversation.custom_attributes or {}),
            "ghl_opportunity_status": payload.status,
        }
        self._add_note(
            conversation,
            payload,
            "status_changed",
            f"Opportunity status changed: {old_status} → {payload.status}",
        )
        self.session.add(conversation)
        self.session.commit()
        observe_sync("opportunity", "status_change", new_status)
        logger.info(
            "opportunity_sync.status_changed",
            extra={
                "account_id": str(self.account_id),
                "conversation_id": str(conversation.id),
                "status": f"{old_status}->{new_status}",
            },
        )
        return conversation

    def notes(self, conversation: Conversation) -> list[Message]:
        return list(
            self.session.scalars(
                select(Message)
                .where(
                    Message.conversation_id == conversation.id,
                    Message.message_type == "activity",
                    Message.private.is_(True),
                )
                .order_by(Message.created_at)
            ).all()
        )

    def _find(self, external_id: str) -> Conversation | None:
        conversation = find_conversation(self.session, self.account_id, opportunity_identifier(external_id))
        if conversation is not None:
            return conversation
        return self.session.scalar(
            select(Conversation)
            .where(
                Conversation.account_id == self.account_id,
                Conversation.custom_attributes["ghl_opportunity_id"].as_string() == external_id,
            )
            .limit(1)
        )

    def _resolve_contact(self, payload: OpportunityPayload) -> tuple[Contact | None, bool]:
        if not payload.contact_id:
            return None, False
        contact = find_contact_by_external_id(self.session, self.account_id, payload.contact_id)
        if contact is not None:
            return contact, False

        try:
            contact = create_placeholder_contact(
                self.session,
                self.account_id,
                payload.contact_id,
                name=payload.contact_name or payload.name or "Opportunity Contact",
                location_id=payload.location_id or self.location_id,
            )
            self.session.commit()
        except IntegrityError:
            # another event for the same GHL contact created the placeholder first
            self.session.rollback()
            return find_contact_by_external_id(self.session, self.account_id, payload.contact_id), False
        return contact, True

    def _custom_attributes(self, payload: OpportunityPayload) -> dict[str, Any]:
        return _drop_blank(
            {
                "ghl_opportunity_id": payload.external_id,
                "ghl_opportunity_name": payload.name,
                "ghl_opportunity_status": payload.status,
                "ghl_opportunity_value": payload.monetary_value,
                "ghl_opportunity_pipeline": payload.pipeline,
                "ghl_opportunity_stage": payload.stage,
                "ghl_opportunity_source": payload.source,
                "ghl_opportunity_synced_at": utcnow().isoformat(),
            }
        )

    def _additional_attributes(self, payload: OpportunityPayload) -> dict[str, Any]:
        return _drop_blank(
            {
                "ghl_pipeline_id": payload.pipeline_id,
                "ghl_stage_id": payload.stage_id,
                "ghl_assigned_to": payload.assigned_to,
                "ghl_opportunity_created_at": payload.date_added,
            }
        )

    def _apply_labels(self, conversation: Conversation, payload: OpportunityPayload) -> None:
        derived = derived_labels(payload)
        conversation.labels = merge_labels(list(conversation.labels or []), derived)
        known = set(
            self.session.scalars(
                select(Label.title).where(Label.account_id == self.account_id, Label.title.in_(derived))
            ).all()
        )
        for title in derived:
            if title not in known:
                self.session.add(Label(account_id=self.account_id, title=title))

    def _created_note(self, payload: OpportunityPayload) -> str:
        lines = [f"Opportunity created: {payload.name or 'Untitled'}"]
        if payload.pipeline_name:
            lines.append(f"Pipeline: {payload.pipeline_name}")
        if payload.stage_name:
            lines.append(f"Stage: {payload.stage_name}")
        if payload.monetary_value not in (None, ""):
            lines.append(f"Value: ${payload.monetary_value}")
        return "\n".join(lines)

    def _add_note(self, conversation: Conversation, payload: OpportunityPayload, event: str, content: str) -> Message:
        note = Message(
            account_id=self.account_id,
            conversation_id=conversation.id,
            message_type="activity",
            content=content,
            private=True,
            source_id=None,
            content_attributes={},
            additional_attributes={
                "ghl_opportunity_event": event,
                "ghl_opportunity_id": payload.external_id,
                "ghl_synced_at": utcnow().isoformat(),
            },
        )
        self.session.add(note)
        conversation.last_activity_at = utcnow()
        return note

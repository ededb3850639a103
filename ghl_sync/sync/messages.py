from __future__ import annotations

import html
import logging
import math
import re
import uuid
from typing import Any

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ghl_sync.billing.service import subscription_service
from ghl_sync.core.clock import utcnow
from ghl_sync.errors import ExternalApiError
from ghl_sync.integrations.client import GhlClient
from ghl_sync.integrations.config import IntegrationConfig
from ghl_sync.integrations.models import Connection
from ghl_sync.jobs.queue import ENRICH_CONTACT, JobQueue, get_job_queue
from ghl_sync.metrics import observe_sync
from ghl_sync.sync.lookups import (
    create_placeholder_contact,
    default_inbox,
    external_contact_id,
    find_contact_by_external_id,
    find_conversation,
    thread_identifier,
)
from ghl_sync.sync.models import Attachment, Contact, Conversation, Message
from ghl_sync.sync.payloads import MessagePayload, normalize_conversation_status, normalize_message


logger = logging.getLogger(__name__)
tracer = trace.get_tracer("ghl_sync.sync.messages")

_TAG_RE = re.compile(r"<[^>]+>")
WORDS_PER_CREDIT = 75

STATUS_MAP = {
    "open": "open",
    "active": "open",
    "closed": "resolved",
    "won": "resolved",
    "lost": "resolved",
    "completed": "resolved",
    "snoozed": "snoozed",
}


def strip_html(body: str | None) -> str:
    if not body:
        return ""
    return html.unescape(_TAG_RE.sub("", body)).strip()


def estimate_ai_credits(body: str | None) -> int:
    if not body or not body.strip():
        return 1
    return max(math.ceil(len(body.split()) / WORDS_PER_CREDIT), 1)


class MessageSyncEngine:
    def __init__(
        self,
        session: Session,
        connection: Connection,
        config: IntegrationConfig,
        client: GhlClient | None = None,
        queue: JobQueue | None = None,
    ) -> None:
        self.session = session
        self.config = config
        self.client = client
        self.queue = queue or get_job_queue()
        self.account_id: uuid.UUID = connection.account_id
        self.location_id = connection.reference_id

    def process_message(self, params: dict[str, Any]) -> Message | None:
        payload = normalize_message(params)
        if not payload.external_id:
            return None

        existing = self._find_by_source_id(payload.external_id)
        if existing is not None:
            observe_sync("message", "inbound", "duplicate")
            logger.info(
                "message_sync.duplicate",
                extra={"account_id": str(self.account_id), "external_id": payload.external_id},
            )
            return existing

        with tracer.start_as_current_span("ghl.message.process") as span:
            span.set_attribute("external_id", payload.external_id)
            contact = self._resolve_contact(payload)
            if contact is None:
                logger.warning(
                    "message_sync.contact_missing",
                    extra={"account_id": str(self.account_id), "external_id": payload.external_id},
                )
                return None

            try:
                conversation = self._resolve_conversation(contact, payload)
                message = self._build_message(conversation, payload)
                self.session.commit()
            except IntegrityError:
                # a concurrent delivery of the same message id committed first
                self.session.rollback()
                observe_sync("message", "inbound", "duplicate")
                logger.info(
                    "message_sync.duplicate",
                    extra={"account_id": str(self.account_id), "external_id": payload.external_id},
                )
                return self._find_by_source_id(payload.external_id)

        if payload.source == self.config.ai_usage_source:
            self._track_ai_usage(payload)

        observe_sync("message", "inbound", "created")
        logger.info(
            "message_sync.created",
            extra={
                "account_id": str(self.account_id),
                "conversation_id": str(message.conversation_id),
                "external_id": payload.external_id,
            },
        )
        return message

    def send_message(self, conversation: Conversation, message: Message) -> dict[str, Any] | None:
        if self.client is None:
            raise RuntimeError("send_message requires a GHL client")

        contact = self.session.get(Contact, conversation.contact_id)
        external_id = external_contact_id(contact) if contact is not None else None
        if contact is None or not external_id:
            logger.warning(
                "message_sync.send_unbound_contact",
                extra={"account_id": str(self.account_id), "conversation_id": str(conversation.id)},
            )
            return None

        channel = "Email" if not contact.phone_number and contact.email else "SMS"
        body = {
            "type": channel,
            "contactId": external_id,
            "message": message.content,
            "locationId": self.location_id,
        }
        try:
            _, response = self.client.request("POST", "/conversations/messages", body)
        except ExternalApiError as exc:
            observe_sync("message", "outbound", "failed")
            logger.error(
                "message_sync.send_failed",
                extra={"account_id": str(self.account_id), "conversation_id": str(conversation.id), "error": str(exc)},
            )
            if exc.retryable:
                raise
            return None

        external_message_id = (response or {}).get("messageId")
        if external_message_id:
            message.source_id = str(external_message_id)
            message.additional_attributes = {
                **(message.additional_attributes or {}),
                "ghl_message_id": str(external_message_id),
                "ghl_sent_at": utcnow().isoformat(),
            }
            self.session.add(message)
            self.session.commit()
        observe_sync("message", "outbound", "sent")
        return response

    def sync_conversation_status(self, params: dict[str, Any]) -> Conversation | None:
        payload = normalize_conversation_status(params)
        if not payload.external_id:
            return None

        conversation = self._find_thread(payload.external_id)
        if conversation is None:
            return None

        new_status = STATUS_MAP.get((payload.status or "").lower())
        if new_status is None or conversation.status == new_status:
            return conversation

        previous = conversation.status
        conversation.status = new_status
        self.session.add(conversation)
        self.session.commit()
        observe_sync("conversation", "status", new_status)
        logger.info(
            "conversation_sync.status_changed",
            extra={
                "account_id": str(self.account_id),
                "conversation_id": str(conversation.id),
                "status": f"{previous}->{new_status}",
            },
        )
        return conversation

    # resolution

    def _find_by_source_id(self, source_id: str) -> Message | None:
        return self.session.scalar(
            select(Message).where(Message.account_id == self.account_id, Message.source_id == source_id)
        )

    def _find_thread(self, external_id: str) -> Conversation | None:
        conversation = find_conversation(self.session, self.account_id, thread_identifier(external_id))
        if conversation is not None:
            return conversation
        return self.session.scalar(
            select(Conversation)
            .where(
                Conversation.account_id == self.account_id,
                Conversation.additional_attributes["ghl_conversation_id"].as_string() == external_id,
            )
            .limit(1)
        )

    def _resolve_contact(self, payload: MessagePayload) -> Contact | None:
        if not payload.contact_id:
            return None
        contact = find_contact_by_external_id(self.session, self.account_id, payload.contact_id)
        if contact is not None:
            return contact

        try:
            contact = create_placeholder_contact(
                self.session,
                self.account_id,
                payload.contact_id,
                location_id=payload.location_id or self.location_id,
            )
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            return find_contact_by_external_id(self.session, self.account_id, payload.contact_id)

        self.queue.enqueue(
            ENRICH_CONTACT,
            account_id=str(self.account_id),
            contact_id=str(contact.id),
            external_contact_id=payload.contact_id,
        )
        observe_sync("contact", "placeholder", "created")
        return contact

    def _resolve_conversation(self, contact: Contact, payload: MessagePayload) -> Conversation:
        conversation = self._find_thread(payload.conversation_id) if payload.conversation_id else None
        if conversation is None:
            conversation = self.session.scalar(
                select(Conversation)
                .where(
                    Conversation.account_id == self.account_id,
                    Conversation.contact_id == contact.id,
                    Conversation.status.in_(("open", "pending")),
                    Conversation.archived.is_(False),
                    # opportunity threads are not message threads
                    ~Conversation.identifier.startswith("opp:") | Conversation.identifier.is_(None),
                )
                .order_by(Conversation.last_activity_at.desc())
                .limit(1)
            )
        if conversation is not None:
            return conversation

        inbox = default_inbox(self.session, self.account_id)
        conversation = Conversation(
            account_id=self.account_id,
            inbox_id=inbox.id,
            contact_id=contact.id,
            identifier=thread_identifier(payload.conversation_id) if payload.conversation_id else None,
            status="open",
            custom_attributes={},
            additional_attributes={
                "ghl_conversation_id": payload.conversation_id,
                "ghl_source": payload.source,
                "ghl_synced_at": utcnow().isoformat(),
            },
            labels=[],
        )
        self.session.add(conversation)
        self.session.flush()
        return conversation

    def _build_message(self, conversation: Conversation, payload: MessagePayload) -> Message:
        message = Message(
            account_id=self.account_id,
            conversation_id=conversation.id,
            message_type="outgoing" if payload.direction == "outbound" else "incoming",
            content=strip_html(payload.body),
            private=False,
            source_id=payload.external_id,
            content_attributes={"content_type": payload.content_type},
            additional_attributes={
                "ghl_message_id": payload.external_id,
                "ghl_conversation_id": payload.conversation_id,
                "ghl_source": payload.source,
                "ghl_date_added": payload.date_added,
                "ghl_synced_at": utcnow().isoformat(),
            },
        )
        self.session.add(message)
        self.session.flush()

        for attachment in payload.attachments:
            if not attachment.url:
                continue
            try:
                with self.session.begin_nested():
                    self.session.add(
                        Attachment(
                            account_id=self.account_id,
                            message_id=message.id,
                            file_type=attachment.file_type,
                            external_url=attachment.url,
                        )
                    )
            except Exception as exc:
                logger.warning(
                    "message_sync.attachment_failed",
                    extra={"account_id": str(self.account_id), "external_id": payload.external_id, "error": str(exc)},
                )

        conversation.last_activity_at = utcnow()
        self.session.add(conversation)
        return message

    def _track_ai_usage(self, payload: MessagePayload) -> None:
        subscription = subscription_service.get_for_account(self.session, self.account_id)
        if subscription is None:
            return
        subscription_service.increment_ai_usage(self.session, subscription, estimate_ai_credits(payload.body))
        self.session.commit()

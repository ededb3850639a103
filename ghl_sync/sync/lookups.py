from __future__ import annotations

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from ghl_sync.sync.models import Contact, Conversation
from ghl_sync.workspace.models import Inbox


logger = logging.getLogger(__name__)

CONTACT_PREFIX = "ext:"
THREAD_PREFIX = "conv:"
OPPORTUNITY_PREFIX = "opp:"
DEFAULT_INBOX_NAME = "GHL Messages"
PENDING_ENRICHMENT = "ghl_pending_enrichment"


def contact_identifier(external_id: str) -> str:
    return f"{CONTACT_PREFIX}{external_id}"


def thread_identifier(external_id: str) -> str:
    return f"{THREAD_PREFIX}{external_id}"


def opportunity_identifier(external_id: str) -> str:
    return f"{OPPORTUNITY_PREFIX}{external_id}"


def external_contact_id(contact: Contact) -> str | None:
    if contact.identifier and contact.identifier.startswith(CONTACT_PREFIX):
        return contact.identifier[len(CONTACT_PREFIX):]
    value = (contact.custom_attributes or {}).get("ghl_contact_id")
    return str(value) if value else None


def find_contact_by_external_id(session: Session, account_id: uuid.UUID, external_id: str) -> Contact | None:
    contact = session.scalar(
        select(Contact).where(Contact.account_id == account_id, Contact.identifier == contact_identifier(external_id))
    )
    if contact is not None:
        return contact

    # contacts synced before identifiers were bound only carry the attribute
    return session.scalar(
        select(Contact)
        .where(
            Contact.account_id == account_id,
            Contact.custom_attributes["ghl_contact_id"].as_string() == external_id,
        )
        .order_by(Contact.created_at)
        .limit(1)
    )


def find_contact_by_email_or_phone(
    session: Session, account_id: uuid.UUID, email: str | None, phone_number: str | None
) -> Contact | None:
    contact = None
    if email:
        contact = session.scalar(select(Contact).where(Contact.account_id == account_id, Contact.email == email))
    if contact is None and phone_number:
        contact = session.scalar(
            select(Contact).where(Contact.account_id == account_id, Contact.phone_number == phone_number)
        )
    return contact


def find_conversation(session: Session, account_id: uuid.UUID, identifier: str) -> Conversation | None:
    return session.scalar(
        select(Conversation).where(Conversation.account_id == account_id, Conversation.identifier == identifier)
    )


def default_inbox(session: Session, account_id: uuid.UUID) -> Inbox:
    inbox = session.scalar(select(Inbox).where(Inbox.account_id == account_id, Inbox.name == DEFAULT_INBOX_NAME))
    if inbox is None:
        inbox = session.scalar(select(Inbox).where(Inbox.account_id == account_id).order_by(Inbox.created_at).limit(1))
    if inbox is None:
        inbox = Inbox(account_id=account_id, name=DEFAULT_INBOX_NAME, channel_type="api")
        session.add(inbox)
        session.flush()
        logger.info("inbox.default_created", extra={"account_id": str(account_id)})
    return inbox


def create_placeholder_contact(
    session: Session,
    account_id: uuid.UUID,
    external_id: str,
    *,
    name: str | None = None,
    location_id: str | None = None,
) -> Contact:
    """Minimal contact bound to an external id, flagged for a later enrichment fetch."""
    custom: dict[str, object] = {"ghl_contact_id": external_id, PENDING_ENRICHMENT: True}
    if location_id:
        custom["ghl_location_id"] = location_id
    contact = Contact(
        account_id=account_id,
        identifier=contact_identifier(external_id),
        name=name or f"GHL Contact {external_id[:8]}",
        custom_attributes=custom,
        additional_attributes={},
    )
    session.add(contact)
    session.flush()
    return contact

from __future__ import annotations

from enum import StrEnum
from typing import Any


class CanonicalEvent(StrEnum):
    CONTACT_CREATE = "contact.create"
    CONTACT_UPDATE = "contact.update"
    CONTACT_DELETE = "contact.delete"
    CONVERSATION_MESSAGE = "conversation.message"
    CONVERSATION_STATUS = "conversation.status"
    OPPORTUNITY_CREATE = "opportunity.create"
    OPPORTUNITY_UPDATE = "opportunity.update"
    OPPORTUNITY_DELETE = "opportunity.delete"
    OPPORTUNITY_STATUS_CHANGE = "opportunity.status_change"
    APP_INSTALLED = "app.installed"
    APP_UNINSTALLED = "app.uninstalled"
    LOCATION_CREATE = "location.create"
    LOCATION_UPDATE = "location.update"


LEGACY_ALIASES: dict[str, CanonicalEvent] = {
    "ContactCreate": CanonicalEvent.CONTACT_CREATE,
    "ContactUpdate": CanonicalEvent.CONTACT_UPDATE,
    "ContactDelete": CanonicalEvent.CONTACT_DELETE,
    "InboundMessage": CanonicalEvent.CONVERSATION_MESSAGE,
    "OutboundMessage": CanonicalEvent.CONVERSATION_MESSAGE,
    "ConversationProviderOutboundMessage": CanonicalEvent.CONVERSATION_MESSAGE,
    "ConversationUpdated": CanonicalEvent.CONVERSATION_STATUS,
    "OpportunityCreate": CanonicalEvent.OPPORTUNITY_CREATE,
    "OpportunityUpdate": CanonicalEvent.OPPORTUNITY_UPDATE,
    "OpportunityDelete": CanonicalEvent.OPPORTUNITY_DELETE,
    "OpportunityStatusUpdate": CanonicalEvent.OPPORTUNITY_STATUS_CHANGE,
    "OpportunityStageUpdate": CanonicalEvent.OPPORTUNITY_UPDATE,
    "AppInstall": CanonicalEvent.APP_INSTALLED,
    "AppUninstall": CanonicalEvent.APP_UNINSTALLED,
    "LocationCreate": CanonicalEvent.LOCATION_CREATE,
    "LocationUpdate": CanonicalEvent.LOCATION_UPDATE,
}

_CANONICAL = {event.value: event for event in CanonicalEvent}


def raw_event_type(params: dict[str, Any]) -> str | None:
    value = params.get("type") or params.get("event")
    return str(value) if value else None


def parse_event(raw: str | None) -> CanonicalEvent | None:
    if not raw:
        return None
    return _CANONICAL.get(raw) or LEGACY_ALIASES.get(raw)

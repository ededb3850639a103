"""Normalization of loosely-shaped GHL webhook and API payloads.

GHL delivers the same entity under different keys depending on the delivery path
(webhook vs REST, legacy vs v2 taxonomy). Each `normalize_*` function is the single
place those shapes are reconciled; everything downstream works on the typed records.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any


_MEDIA_TYPES = {"image", "audio", "video"}
_IMAGE_RE = re.compile(r"image|png|jpe?g|gif|webp", re.IGNORECASE)
_AUDIO_RE = re.compile(r"audio|mp3|wav|ogg|m4a", re.IGNORECASE)
_VIDEO_RE = re.compile(r"video|mp4|mov|webm", re.IGNORECASE)

OUTBOUND_EVENT_TYPES = {"OutboundMessage", "ConversationProviderOutboundMessage"}


def _first(*values: Any) -> Any:
    for value in values:
        if value not in (None, "", [], {}):
            return value
    return None


def _dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        return [value] if value.strip() else []
    return []


def normalize_phone(phone: Any) -> str | None:
    text = _str(phone)
    if text is None:
        return None
    text = text.strip()
    if not text:
        return None
    return text if text.startswith("+") else f"+{text}"


def extract_location_id(params: dict[str, Any]) -> str | None:
    return _str(
        _first(
            params.get("locationId"),
            params.get("location_id"),
            _dict(params.get("contact")).get("locationId"),
            _dict(params.get("data")).get("locationId"),
            _dict(params.get("location")).get("id"),
        )
    )


@dataclass(slots=True)
class ContactPayload:
    external_id: str | None
    name: str | None = None
    email: str | None = None
    phone_number: str | None = None
    location_id: str | None = None
    custom_attributes: dict[str, Any] = field(default_factory=dict)
    additional_attributes: dict[str, Any] = field(default_factory=dict)


def _contact_name(data: dict[str, Any]) -> str | None:
    parts = [
        _str(_first(data.get("firstName"), data.get("first_name"))),
        _str(_first(data.get("lastName"), data.get("last_name"))),
    ]
    present = [part for part in parts if part]
    if present:
        return " ".join(present)
    return _str(_first(data.get("name"), data.get("contactName")))


def normalize_contact(params: dict[str, Any]) -> ContactPayload:
    data = _dict(params.get("contact")) or _dict(params.get("data")) or params
    external_id = _str(data.get("id"))

    custom: dict[str, Any] = {
        "ghl_contact_id": external_id,
        "ghl_location_id": _str(data.get("locationId")),
        "ghl_source": _str(data.get("source")),
        "ghl_type": _str(data.get("type")),
    }
    tags = _list(data.get("tags"))
    if tags:
        custom["ghl_tags"] = list(tags)
    for item in _list(data.get("customFields")):
        if not isinstance(item, dict):
            continue
        key = _first(item.get("id"), item.get("key"))
        if key is None:
            continue
        custom[f"ghl_cf_{key}"] = _first(item.get("value"), item.get("fieldValue"))

    additional = {
        "company_name": data.get("companyName"),
        "city": data.get("city"),
        "state": data.get("state"),
        "country": data.get("country"),
        "address": data.get("address1"),
        "website": data.get("website"),
    }

    return ContactPayload(
        external_id=external_id,
        name=_contact_name(data),
        email=_str(data.get("email")),
        phone_number=normalize_phone(_first(data.get("phone"), data.get("phoneNumber"))),
        location_id=_str(_first(data.get("locationId"), params.get("locationId"))),
        custom_attributes={key: value for key, value in custom.items() if value not in (None, "", [], {})},
        additional_attributes={key: value for key, value in additional.items() if value not in (None, "")},
    )


@dataclass(slots=True)
class AttachmentPayload:
    url: str | None
    file_type: str


def classify_attachment(content_type: str | None) -> str:
    text = content_type or ""
    major = text.split("/", 1)[0].strip().lower()
    if major in _MEDIA_TYPES:
        return major
    if _IMAGE_RE.search(text):
        return "image"
    if _AUDIO_RE.search(text):
        return "audio"
    if _VIDEO_RE.search(text):
        return "video"
    return "file"


def _normalize_attachment(raw: Any) -> AttachmentPayload:
    if isinstance(raw, str):
        return AttachmentPayload(url=raw, file_type=classify_attachment(raw))
    data = _dict(raw)
    url = _str(_first(data.get("url"), data.get("payload")))
    return AttachmentPayload(url=url, file_type=classify_attachment(_first(data.get("type"), data.get("contentType"), url)))


@dataclass(slots=True)
class MessagePayload:
    external_id: str | None
    body: str | None
    direction: str
    contact_id: str | None
    conversation_id: str | None
    location_id: str | None
    date_added: str | None
    content_type: str = "text"
    source: str = "ghl"
    attachments: list[AttachmentPayload] = field(default_factory=list)


def _direction(data: dict[str, Any], params: dict[str, Any]) -> str:
    explicit = _str(_first(data.get("direction"), params.get("direction")))
    if explicit in {"inbound", "outbound"}:
        return explicit
    event_type = _str(_first(params.get("type"), params.get("event"), data.get("type")))
    if event_type in OUTBOUND_EVENT_TYPES:
        return "outbound"
    return "inbound"


def normalize_message(params: dict[str, Any]) -> MessagePayload:
    data = _dict(params.get("message")) or _dict(params.get("data")) or params
    return MessagePayload(
        external_id=_str(_first(data.get("id"), data.get("messageId"))),
        body=_str(_first(data.get("body"), data.get("message"), data.get("text"))),
        direction=_direction(data, params),
        contact_id=_str(_first(data.get("contactId"), _dict(data.get("contact")).get("id"), params.get("contactId"))),
        conversation_id=_str(_first(data.get("conversationId"), params.get("conversationId"))),
        location_id=_str(_first(data.get("locationId"), params.get("locationId"))),
        date_added=_str(_first(data.get("dateAdded"), data.get("createdAt"))),
        content_type=_str(data.get("contentType")) or "text",
        source=_str(_first(data.get("source"), data.get("channel"))) or "ghl",
        attachments=[_normalize_attachment(item) for item in _list(data.get("attachments"))],
    )


@dataclass(slots=True)
class ConversationStatusPayload:
    external_id: str | None
    status: str | None


def normalize_conversation_status(params: dict[str, Any]) -> ConversationStatusPayload:
    data = _dict(params.get("conversation")) or _dict(params.get("data")) or params
    return ConversationStatusPayload(
        external_id=_str(_first(data.get("id"), data.get("conversationId"))),
        status=_str(data.get("status")),
    )


@dataclass(slots=True)
class OpportunityPayload:
    external_id: str | None
    name: str | None
    status: str | None
    monetary_value: Any
    pipeline_id: str | None
    pipeline_name: str | None
    stage_id: str | None
    stage_name: str | None
    contact_id: str | None
    location_id: str | None
    assigned_to: str | None
    source: str | None
    date_added: str | None
    last_status_change_at: str | None
    contact_name: str | None = None
    contact_email: str | None = None
    contact_phone: str | None = None

    @property
    def pipeline(self) -> str | None:
        return self.pipeline_name or self.pipeline_id

    @property
    def stage(self) -> str | None:
        return self.stage_name or self.stage_id


def normalize_opportunity(params: dict[str, Any]) -> OpportunityPayload:
    data = _dict(params.get("opportunity")) or _dict(params.get("data")) or params
    contact = _dict(data.get("contact"))
    return OpportunityPayload(
        external_id=_str(_first(data.get("id"), data.get("opportunityId"))),
        name=_str(_first(data.get("name"), data.get("opportunityName"))),
        status=_str(data.get("status")),
        monetary_value=_first(data.get("monetaryValue"), data.get("monetary_value")),
        pipeline_id=_str(data.get("pipelineId")),
        pipeline_name=_str(data.get("pipelineName")),
        stage_id=_str(_first(data.get("pipelineStageId"), data.get("stageId"), data.get("stage_id"))),
        stage_name=_str(_first(data.get("stageName"), data.get("stage_name"), data.get("pipelineStageName"))),
        contact_id=_str(_first(data.get("contactId"), contact.get("id"))),
        location_id=_str(_first(data.get("locationId"), params.get("locationId"))),
        assigned_to=_str(data.get("assignedTo")),
        source=_str(data.get("source")),
        date_added=_str(_first(data.get("dateAdded"), data.get("createdAt"))),
        last_status_change_at=_str(_first(data.get("lastStatusChangeAt"), data.get("updatedAt"))),
        contact_name=_str(contact.get("name")),
        contact_email=_str(contact.get("email")),
        contact_phone=normalize_phone(contact.get("phone")),
    )

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ghl_sync.core.clock import utcnow
from ghl_sync.core.database import Base


CONVERSATION_STATUSES = ("open", "pending", "snoozed", "resolved")
MESSAGE_TYPES = ("incoming", "outgoing", "activity")


class Contact(Base):
    __tablename__ = "contact"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("account.id", ondelete="CASCADE"), nullable=False)
    identifier: Mapped[str | None] = mapped_column(String(255), nullable=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    custom_attributes: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    additional_attributes: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("account_id", "identifier", name="uq_contact_account_identifier"),
        UniqueConstraint("account_id", "email", name="uq_contact_account_email"),
        UniqueConstraint("account_id", "phone_number", name="uq_contact_account_phone"),
    )


class Conversation(Base):
    __tablename__ = "conversation"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("account.id", ondelete="CASCADE"), nullable=False)
    inbox_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("inbox.id", ondelete="CASCADE"), nullable=False)
    contact_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("contact.id", ondelete="CASCADE"), nullable=False)
    identifier: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="open", server_default="open")
    custom_attributes: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    additional_attributes: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    labels: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    messages: Mapped[list[Message]] = relationship(
        "ghl_sync.sync.models.Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="ghl_sync.sync.models.Message.created_at",
    )

    __table_args__ = (
        UniqueConstraint("account_id", "identifier", name="uq_conversation_account_identifier"),
        Index("ix_conversation_contact_activity", "account_id", "contact_id", "last_activity_at"),
    )


class Message(Base):
    __tablename__ = "message"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("account.id", ondelete="CASCADE"), nullable=False)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("conversation.id", ondelete="CASCADE"), nullable=False
    )
    message_type: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    private: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    source_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    content_attributes: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    additional_attributes: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    conversation: Mapped[Conversation] = relationship("ghl_sync.sync.models.Conversation", back_populates="messages")
    attachments: Mapped[list[Attachment]] = relationship(
        "ghl_sync.sync.models.Attachment",
        back_populates="message",
        cascade="all, delete-orphan",
    )

    # NULL source_ids never collide, so activity notes are unaffected.
    __table_args__ = (
        UniqueConstraint("account_id", "source_id", name="uq_message_account_source_id"),
        Index("ix_message_conversation_created", "conversation_id", "created_at"),
    )


class Attachment(Base):
    __tablename__ = "attachment"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("account.id", ondelete="CASCADE"), nullable=False)
    message_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("message.id", ondelete="CASCADE"), nullable=False)
    file_type: Mapped[str] = mapped_column(String(16), nullable=False, default="file")
    external_url: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    message: Mapped[Message] = relationship("ghl_sync.sync.models.Message", back_populates="attachments")


class Label(Base):
    __tablename__ = "label"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("account.id", ondelete="CASCADE"), nullable=False)
    title: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint("account_id", "title", name="uq_label_account_title"),)

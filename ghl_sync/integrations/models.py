from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ghl_sync.core.clock import utcnow
from ghl_sync.core.database import Base


GHL_APP_ID = "ghl"

CONNECTION_ENABLED = "enabled"
CONNECTION_DISABLED = "disabled"


class Connection(Base):
    __tablename__ = "integration_connection"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("account.id", ondelete="CASCADE"), nullable=False)
    app_id: Mapped[str] = mapped_column(String(64), nullable=False, default=GHL_APP_ID)
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=CONNECTION_ENABLED, server_default=CONNECTION_ENABLED)
    reference_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    settings: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("account_id", "app_id", name="uq_integration_connection_account_app"),
        Index("ix_integration_connection_reference", "app_id", "reference_id", "status"),
    )

    @property
    def enabled(self) -> bool:
        return self.status == CONNECTION_ENABLED

    def __repr__(self) -> str:
        return f"<Connection id={self.id} account_id={self.account_id} status={self.status} reference_id={self.reference_id}>"


class InstallationConfig(Base):
    """Admin-managed key/value settings that override environment configuration."""

    __tablename__ = "installation_config"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)
    locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

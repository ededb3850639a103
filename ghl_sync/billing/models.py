from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, CheckConstraint, DateTime, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ghl_sync.billing.plans import PLANS
from ghl_sync.core.clock import utcnow
from ghl_sync.core.database import Base


SUBSCRIPTION_STATUSES = ("trialing", "active", "past_due", "cancelled", "suspended")
ACTIVE_STATUSES = ("trialing", "active")

_DEFAULT_TIER = PLANS["starter"]


class Subscription(Base):
    __tablename__ = "billing_subscription"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("account.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    plan: Mapped[str] = mapped_column(String(32), nullable=False, default="starter", server_default="starter")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="trialing", server_default="trialing")
    locations_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=_DEFAULT_TIER.locations_limit)
    agents_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=_DEFAULT_TIER.agents_limit)
    ai_credits_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=_DEFAULT_TIER.ai_credits_limit)
    locations_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    ai_credits_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    usage_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    # "metadata" is reserved on declarative classes
    subscription_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    trial_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("ai_credits_used >= 0", name="ck_billing_subscription_ai_credits_nonnegative"),
        CheckConstraint(
            "plan IN ('starter', 'growth', 'scale', 'enterprise')",
            name="ck_billing_subscription_plan",
        ),
        CheckConstraint(
            "status IN ('trialing', 'active', 'past_due', 'cancelled', 'suspended')",
            name="ck_billing_subscription_status",
        ),
    )

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


PlanCode = Literal["starter", "growth", "scale", "enterprise"]


class SubscriptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    account_id: UUID
    plan: str
    status: str
    locations_limit: int
    agents_limit: int
    ai_credits_limit: int
    locations_count: int
    ai_credits_used: int
    trial_ends_at: datetime | None
    current_period_ends_at: datetime | None
    cancelled_at: datetime | None


class TenantRead(BaseModel):
    account_id: UUID
    name: str
    ghl_location_id: str | None
    connection_status: str | None
    agents_count: int
    subscription: SubscriptionRead
    usage: dict[str, Any]


class TenantStats(BaseModel):
    total: int
    by_status: dict[str, int]
    by_plan: dict[str, int]
    connected: int


class TenantListResponse(BaseModel):
    tenants: list[TenantRead]
    stats: TenantStats


class UpgradeRequest(BaseModel):
    # plain str so unknown plans reach the service and map to 422 with its message
    plan: str = Field(min_length=1, max_length=32)


class UsageResponse(BaseModel):
    account_id: UUID
    usage: dict[str, Any]

"""Plan limit checks resolved against an account's current subscription tier.

Accounts without a subscription predate the GHL billing model and are never restricted.
"""

from __future__ import annotations

import uuid

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ghl_sync.billing.models import Subscription
from ghl_sync.billing.service import subscription_service
from ghl_sync.errors import PlanLimitExceededError
from ghl_sync.workspace.models import AccountUser


def _subscription(session: Session, account_id: uuid.UUID) -> Subscription | None:
    return subscription_service.get_for_account(session, account_id)


def count_agents(session: Session, account_id: uuid.UUID) -> int:
    return int(session.scalar(select(func.count(AccountUser.id)).where(AccountUser.account_id == account_id)) or 0)


def enforce_agent_limit(session: Session, account_id: uuid.UUID, current_count: int | None = None) -> bool:
    subscription = _subscription(session, account_id)
    if subscription is None:
        return True

    current = count_agents(session, account_id) if current_count is None else current_count
    if subscription_service.agents_available(subscription, current):
        return True
    raise PlanLimitExceededError("agents", current, subscription.agents_limit)


def enforce_location_limit(session: Session, account_id: uuid.UUID) -> bool:
    subscription = _subscription(session, account_id)
    if subscription is None:
        return True

    if subscription_service.locations_available(subscription):
        return True
    raise PlanLimitExceededError("locations", subscription.locations_count, subscription.locations_limit)


def enforce_ai_credits(session: Session, account_id: uuid.UUID, credits_needed: int = 1) -> bool:
    subscription = _subscription(session, account_id)
    if subscription is None:
        return True

    if subscription_service.ai_credits_remaining(subscription) >= credits_needed:
        return True
    raise PlanLimitExceededError("ai_credits", subscription.ai_credits_used, subscription.ai_credits_limit)


def enforce_feature(session: Session, account_id: uuid.UUID, feature: str) -> bool:
    subscription = _subscription(session, account_id)
    if subscription is None:
        return True

    if subscription_service.has_feature(subscription, feature):
        return True
    raise PlanLimitExceededError(f"feature_{feature}", 0, 0)


def plan_allows(session: Session, account_id: uuid.UUID, check_type: str, *args: object) -> bool:
    subscription = _subscription(session, account_id)
    if subscription is None:
        return True

    if check_type == "agents":
        current = args[0] if args else count_agents(session, account_id)
        return subscription_service.agents_available(subscription, int(current))  # type: ignore[call-overload]
    if check_type == "locations":
        return subscription_service.locations_available(subscription)
    if check_type == "ai_credits":
        return subscription_service.ai_credits_available(subscription)
    if check_type == "feature":
        return bool(args) and subscription_service.has_feature(subscription, str(args[0]))
    return True

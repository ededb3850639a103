from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from ghl_sync.billing.models import ACTIVE_STATUSES, Subscription
from ghl_sync.billing.plans import DEFAULT_PLAN, PLANS, PlanTier
from ghl_sync.core.clock import ensure_utc, utcnow
from ghl_sync.errors import InvalidTransitionError, UnknownPlanError


logger = logging.getLogger(__name__)

VALID_SUBSCRIPTION_TRANSITIONS: dict[str, set[str]] = {
    "trialing": {"active", "past_due", "suspended", "cancelled"},
    "active": {"past_due", "suspended", "cancelled"},
    "past_due": {"active", "suspended", "cancelled"},
    "suspended": {"active", "cancelled"},
    "cancelled": {"active"},
}


def _assert_transition(current: str, target: str) -> None:
    if target not in VALID_SUBSCRIPTION_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(current, target)


def _tier(subscription: Subscription) -> PlanTier:
    return PLANS.get(subscription.plan, PLANS[DEFAULT_PLAN])


@dataclass(slots=True)
class SubscriptionService:
    def get_for_account(self, session: Session, account_id: uuid.UUID) -> Subscription | None:
        return session.scalar(select(Subscription).where(Subscription.account_id == account_id))

    def create_trial(
        self,
        session: Session,
        account_id: uuid.UUID,
        *,
        trial_days: int,
        metadata: dict[str, Any] | None = None,
    ) -> Subscription:
        tier = PLANS[DEFAULT_PLAN]
        ends_at = utcnow() + timedelta(days=trial_days)
        subscription = Subscription(
            account_id=account_id,
            plan=tier.code,
            status="trialing",
            locations_limit=tier.locations_limit,
            agents_limit=tier.agents_limit,
            ai_credits_limit=tier.ai_credits_limit,
            locations_count=1,
            ai_credits_used=0,
            usage_data={},
            subscription_metadata=dict(metadata or {}),
            trial_ends_at=ends_at,
            current_period_ends_at=ends_at,
        )
        session.add(subscription)
        session.flush()
        return subscription

    def upgrade_to(self, session: Session, subscription: Subscription, plan_code: str) -> Subscription:
        tier = PLANS.get(plan_code)
        if tier is None:
            raise UnknownPlanError(plan_code)
        if subscription.status != "active":
            _assert_transition(subscription.status, "active")

        previous = subscription.plan
        subscription.plan = tier.code
        subscription.locations_limit = tier.locations_limit
        subscription.agents_limit = tier.agents_limit
        subscription.ai_credits_limit = tier.ai_credits_limit
        subscription.status = "active"
        session.add(subscription)
        logger.info(
            "subscription.upgraded",
            extra={"account_id": str(subscription.account_id), "status": subscription.status, "event": f"{previous}->{tier.code}"},
        )
        return subscription

    def activate(self, session: Session, subscription: Subscription) -> Subscription:
        return self._transition(session, subscription, "active")

    def suspend(self, session: Session, subscription: Subscription) -> Subscription:
        return self._transition(session, subscription, "suspended")

    def mark_past_due(self, session: Session, subscription: Subscription) -> Subscription:
        return self._transition(session, subscription, "past_due")

    def cancel(self, session: Session, subscription: Subscription) -> Subscription:
        self._transition(session, subscription, "cancelled")
        subscription.cancelled_at = utcnow()
        return subscription

    def _transition(self, session: Session, subscription: Subscription, target: str) -> Subscription:
        if subscription.status == target:
            return subscription
        _assert_transition(subscription.status, target)
        previous = subscription.status
        subscription.status = target
        if target == "active":
            subscription.cancelled_at = None
        session.add(subscription)
        logger.info(
            "subscription.transitioned",
            extra={"account_id": str(subscription.account_id), "status": target, "event": f"{previous}->{target}"},
        )
        return subscription

    def increment_ai_usage(
        self,
        session: Session,
        subscription: Subscription,
        credits: int = 1,
        *,
        today: date | None = None,
    ) -> Subscription:
        if credits <= 0:
            return subscription
        day_key = (today or utcnow().date()).isoformat()
        usage = dict(subscription.usage_data or {})
        daily = dict(usage.get("daily_ai") or {})
        daily[day_key] = int(daily.get(day_key, 0)) + credits
        usage["daily_ai"] = daily
        subscription.usage_data = usage
        subscription.ai_credits_used = (subscription.ai_credits_used or 0) + credits
        session.add(subscription)
        return subscription

    def record_location_added(self, session: Session, subscription: Subscription, location_id: str | None) -> Subscription:
        subscription.locations_count = (subscription.locations_count or 0) + 1
        if subscription.locations_count > subscription.locations_limit:
            logger.warning(
                "subscription.location_limit_exceeded",
                extra={
                    "account_id": str(subscription.account_id),
                    "location_id": location_id,
                    "total": subscription.locations_count,
                },
            )
        usage = dict(subscription.usage_data or {})
        usage["last_location_added"] = utcnow().isoformat()
        location_ids = list(usage.get("location_ids") or [])
        if location_id and location_id not in location_ids:
            location_ids.append(location_id)
        usage["location_ids"] = location_ids
        subscription.usage_data = usage
        session.add(subscription)
        return subscription

    def reset_monthly_usage(self, session: Session, subscription: Subscription) -> Subscription:
        usage = dict(subscription.usage_data or {})
        usage["last_reset"] = utcnow().isoformat()
        usage["previous_month_ai_total"] = subscription.ai_credits_used or 0
        subscription.usage_data = usage
        subscription.ai_credits_used = 0
        session.add(subscription)
        return subscription

    def reset_all_monthly_usage(self, session: Session) -> dict[str, int]:
        subscriptions = session.scalars(select(Subscription).where(Subscription.status.in_(ACTIVE_STATUSES))).all()
        reset = 0
        failed = 0
        for subscription in subscriptions:
            account_id = subscription.account_id
            try:
                self.reset_monthly_usage(session, subscription)
                session.commit()
                reset += 1
            except Exception as exc:
                session.rollback()
                failed += 1
                logger.error(
                    "subscription.usage_reset_failed",
                    extra={"account_id": str(account_id), "error": str(exc)},
                )
        logger.info("subscription.usage_reset_completed", extra={"total": reset, "failed": failed})
        return {"reset": reset, "failed": failed}

    def ai_credits_remaining(self, subscription: Subscription) -> int:
        return max(subscription.ai_credits_limit - (subscription.ai_credits_used or 0), 0)

    def ai_usage_percentage(self, subscription: Subscription) -> float:
        if subscription.ai_credits_limit <= 0:
            return 0.0
        return round((subscription.ai_credits_used or 0) / subscription.ai_credits_limit * 100, 1)

    def agents_available(self, subscription: Subscription, current_count: int) -> bool:
        return current_count < subscription.agents_limit

    def locations_available(self, subscription: Subscription) -> bool:
        return subscription.locations_count < subscription.locations_limit

    def ai_credits_available(self, subscription: Subscription) -> bool:
        return (subscription.ai_credits_used or 0) < subscription.ai_credits_limit

    def trial_active(self, subscription: Subscription, now: datetime | None = None) -> bool:
        if subscription.status != "trialing" or subscription.trial_ends_at is None:
            return False
        return ensure_utc(subscription.trial_ends_at) > (now or utcnow())

    def trial_days_remaining(self, subscription: Subscription, now: datetime | None = None) -> int:
        if not self.trial_active(subscription, now):
            return 0
        remaining = ensure_utc(subscription.trial_ends_at) - (now or utcnow())  # type: ignore[arg-type]
        return max(math.ceil(remaining.total_seconds() / 86400), 0)

    def has_feature(self, subscription: Subscription, feature: str) -> bool:
        return feature in _tier(subscription).features

    def usage_summary(self, subscription: Subscription) -> dict[str, Any]:
        tier = _tier(subscription)
        return {
            "plan": subscription.plan,
            "plan_name": tier.name,
            "status": subscription.status,
            "price_monthly": tier.price_monthly,
            "locations_count": subscription.locations_count,
            "locations_limit": subscription.locations_limit,
            "agents_limit": subscription.agents_limit,
            "ai_credits_used": subscription.ai_credits_used,
            "ai_credits_limit": subscription.ai_credits_limit,
            "ai_credits_remaining": self.ai_credits_remaining(subscription),
            "ai_usage_percentage": self.ai_usage_percentage(subscription),
            "trial_active": self.trial_active(subscription),
            "trial_days_remaining": self.trial_days_remaining(subscription),
            "features": sorted(tier.features),
            "daily_ai": dict((subscription.usage_data or {}).get("daily_ai") or {}),
        }


subscription_service = SubscriptionService()

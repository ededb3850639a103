from __future__ import annotations

from datetime import date, timedelta

import pytest

from ghl_sync.billing.enforcement import (
    enforce_agent_limit,
    enforce_ai_credits,
    enforce_feature,
    enforce_location_limit,
    plan_allows,
)
from ghl_sync.billing.service import subscription_service
from ghl_sync.core.clock import utcnow
from ghl_sync.errors import InvalidTransitionError, PlanLimitExceededError, UnknownPlanError
from tests.factories import make_account, make_subscription


def test_create_trial_uses_starter_limits(db_session) -> None:
    account = make_account(db_session)

    subscription = subscription_service.create_trial(db_session, account.id, trial_days=14, metadata={"oauth_scopes": ["a"]})
    db_session.commit()

    assert subscription.plan == "starter"
    assert subscription.status == "trialing"
    assert (subscription.agents_limit, subscription.locations_limit, subscription.ai_credits_limit) == (3, 1, 500)
    assert subscription_service.trial_active(subscription)
    assert subscription_service.trial_days_remaining(subscription) == 14


def test_upgrade_copies_tier_limits_and_activates(db_session) -> None:
    subscription = make_subscription(db_session, make_account(db_session), status="trialing", trial_days=3)

    subscription_service.upgrade_to(db_session, subscription, "growth")

    assert subscription.plan == "growth"
    assert subscription.status == "active"
    assert (subscription.agents_limit, subscription.locations_limit, subscription.ai_credits_limit) == (10, 5, 2500)
    assert subscription_service.has_feature(subscription, "automation_rules")


def test_upgrade_rejects_unknown_plan(db_session) -> None:
    subscription = make_subscription(db_session, make_account(db_session))

    with pytest.raises(UnknownPlanError, match="Unknown plan: platinum"):
        subscription_service.upgrade_to(db_session, subscription, "platinum")
    assert subscription.plan == "starter"


def test_transitions_follow_state_machine(db_session) -> None:
    subscription = make_subscription(db_session, make_account(db_session), status="active")

    subscription_service.suspend(db_session, subscription)
    assert subscription.status == "suspended"
    with pytest.raises(InvalidTransitionError):
        subscription_service.mark_past_due(db_session, subscription)

    subscription_service.cancel(db_session, subscription)
    assert subscription.status == "cancelled"
    assert subscription.cancelled_at is not None

    subscription_service.activate(db_session, subscription)
    assert subscription.status == "active"
    assert subscription.cancelled_at is None


def test_ai_usage_tracking_and_monthly_reset(db_session) -> None:
    subscription = make_subscription(db_session, make_account(db_session))

    subscription_service.increment_ai_usage(db_session, subscription, 120, today=date(2026, 10, 1))
    subscription_service.increment_ai_usage(db_session, subscription, 5, today=date(2026, 10, 1))
    subscription_service.increment_ai_usage(db_session, subscription, 0)
    db_session.commit()

    assert subscription.ai_credits_used == 125
    assert subscription.usage_data["daily_ai"] == {"2026-10-01": 125}
    assert subscription_service.ai_credits_remaining(subscription) == 375
    assert subscription_service.ai_usage_percentage(subscription) == 25.0

    subscription_service.reset_monthly_usage(db_session, subscription)
    db_session.commit()

    assert subscription.ai_credits_used == 0
    assert subscription.usage_data["previous_month_ai_total"] == 125
    assert subscription.usage_data["last_reset"]


def test_reset_all_only_touches_live_subscriptions(db_session) -> None:
    live = make_subscription(db_session, make_account(db_session, location_id="a"), ai_credits_used=10)
    cancelled = make_subscription(
        db_session, make_account(db_session, location_id="b"), status="cancelled", ai_credits_used=7
    )

    assert subscription_service.reset_all_monthly_usage(db_session) == {"reset": 1, "failed": 0}
    db_session.refresh(live)
    db_session.refresh(cancelled)
    assert live.ai_credits_used == 0
    assert cancelled.ai_credits_used == 7


def test_expired_trial_is_not_active(db_session) -> None:
    subscription = make_subscription(db_session, make_account(db_session), status="trialing", trial_days=1)
    subscription.trial_ends_at = utcnow() - timedelta(hours=1)

    assert not subscription_service.trial_active(subscription)
    assert subscription_service.trial_days_remaining(subscription) == 0


def test_agent_limit_error_carries_limit_details(db_session) -> None:
    account = make_account(db_session)
    make_subscription(db_session, account)

    assert enforce_agent_limit(db_session, account.id, current_count=2)
    with pytest.raises(PlanLimitExceededError) as excinfo:
        enforce_agent_limit(db_session, account.id, current_count=3)

    assert excinfo.value.to_dict() == {"limit_type": "agents", "current": 3, "maximum": 3}
    assert str(excinfo.value) == "Agents limit exceeded: 3/3"


def test_other_limits(db_session) -> None:
    account = make_account(db_session)
    make_subscription(db_session, account, ai_credits_used=499)

    assert enforce_ai_credits(db_session, account.id, 1)
    with pytest.raises(PlanLimitExceededError, match="Ai Credits limit exceeded: 499/500"):
        enforce_ai_credits(db_session, account.id, 2)
    with pytest.raises(PlanLimitExceededError, match="Locations limit exceeded: 1/1"):
        enforce_location_limit(db_session, account.id)
    with pytest.raises(PlanLimitExceededError) as excinfo:
        enforce_feature(db_session, account.id, "white_label")
    assert excinfo.value.limit_type == "feature_white_label"
    assert enforce_feature(db_session, account.id, "live_chat")


def test_plan_allows_and_unrestricted_accounts(db_session) -> None:
    limited = make_account(db_session, location_id="a")
    make_subscription(db_session, limited)
    legacy = make_account(db_session, location_id="b")

    assert plan_allows(db_session, limited.id, "agents", 2)
    assert not plan_allows(db_session, limited.id, "agents", 3)
    assert not plan_allows(db_session, limited.id, "locations")
    assert plan_allows(db_session, limited.id, "feature", "contact_sync")
    assert not plan_allows(db_session, limited.id, "feature", "api_access")
    assert plan_allows(db_session, legacy.id, "agents", 1000)
    assert enforce_agent_limit(db_session, legacy.id, current_count=1000)

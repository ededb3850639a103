from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class PlanTier:
    code: str
    name: str
    locations_limit: int
    agents_limit: int
    ai_credits_limit: int
    price_monthly: int | None
    features: frozenset[str]


_STARTER_FEATURES = frozenset({"live_chat", "email_inbox", "contact_sync", "basic_reporting"})
_GROWTH_FEATURES = frozenset(
    {
        "live_chat",
        "email_inbox",
        "contact_sync",
        "advanced_reporting",
        "hudley_copilot",
        "automation_rules",
        "teams",
    }
)
_SCALE_FEATURES = _GROWTH_FEATURES | {
    "hudley_assistant",
    "white_label",
    "custom_domain",
    "api_access",
    "priority_support",
}
_ENTERPRISE_FEATURES = _SCALE_FEATURES | {
    "dedicated_infrastructure",
    "sla_guarantee",
    "custom_integrations",
}

PLANS: dict[str, PlanTier] = {
    "starter": PlanTier("starter", "Starter", 1, 3, 500, 97, _STARTER_FEATURES),
    "growth": PlanTier("growth", "Growth", 5, 10, 2500, 297, _GROWTH_FEATURES),
    "scale": PlanTier("scale", "Scale", 25, 50, 10000, 697, frozenset(_SCALE_FEATURES)),
    "enterprise": PlanTier("enterprise", "Enterprise", 999, 999, 50000, None, frozenset(_ENTERPRISE_FEATURES)),
}

DEFAULT_PLAN = "starter"


def get_plan(code: str) -> PlanTier | None:
    return PLANS.get(code)

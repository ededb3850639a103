from ghl_sync.billing.api import router
from ghl_sync.billing.models import Subscription
from ghl_sync.billing.plans import DEFAULT_PLAN, PLANS, PlanTier, get_plan
from ghl_sync.billing.service import SubscriptionService, subscription_service

__all__ = [
    "router",
    "Subscription",
    "PlanTier",
    "PLANS",
    "DEFAULT_PLAN",
    "get_plan",
    "SubscriptionService",
    "subscription_service",
]

"""
Subscription plans

Per-plan feature limits and the access helpers built on them. A numeric
limit of -1 means unlimited; boolean limits are plain feature flags.
"""

from typing import Dict, Optional, Union

from ledgerly.app.models import SubscriptionPlan
from ledgerly.config import Settings, get_settings

UNLIMITED = -1

FEATURES = ('transactions', 'bank_connections', 'savings_goals', 'historical_data', 'ai_insights')

PLAN_LIMITS: Dict[SubscriptionPlan, Dict[str, Union[int, bool]]] = {
    SubscriptionPlan.FREE: {
        'transactions': 50,
        'bank_connections': 0,
        'savings_goals': 3,
        'historical_data': False,
        'ai_insights': False,
    },
    SubscriptionPlan.PRO: {
        'transactions': UNLIMITED,
        'bank_connections': 2,
        'savings_goals': UNLIMITED,
        'historical_data': True,
        'ai_insights': False,
    },
    SubscriptionPlan.PREMIUM: {
        'transactions': UNLIMITED,
        'bank_connections': UNLIMITED,
        'savings_goals': UNLIMITED,
        'historical_data': True,
        'ai_insights': True,
    },
}

PLAN_HIERARCHY = {
    SubscriptionPlan.FREE: 0,
    SubscriptionPlan.PRO: 1,
    SubscriptionPlan.PREMIUM: 2,
}


def has_access(user_plan: SubscriptionPlan, required_plan: SubscriptionPlan) -> bool:
    """True when user_plan is at least required_plan."""
    return PLAN_HIERARCHY[SubscriptionPlan(user_plan)] >= PLAN_HIERARCHY[SubscriptionPlan(required_plan)]


def can_use_feature(user_plan: SubscriptionPlan, feature: str, current_usage: int = 0) -> bool:
    """
    Check a feature against the plan's limits.

    Raises:
        KeyError: Unknown feature name
    """
    limit = PLAN_LIMITS[SubscriptionPlan(user_plan)][feature]

    if isinstance(limit, bool):
        return limit

    if limit == UNLIMITED:
        return True

    return current_usage < limit


def price_to_plan(price_id: Optional[str], settings: Optional[Settings] = None) -> SubscriptionPlan:
    """Map a Stripe price id to a plan; unknown prices fall back to free."""
    settings = settings or get_settings()
    mapping = {
        settings.stripe_price_pro: SubscriptionPlan.PRO,
        settings.stripe_price_premium: SubscriptionPlan.PREMIUM,
    }
    return mapping.get(price_id, SubscriptionPlan.FREE)


def plan_to_price(plan: SubscriptionPlan, settings: Optional[Settings] = None) -> Optional[str]:
    settings = settings or get_settings()
    return {
        SubscriptionPlan.PRO: settings.stripe_price_pro,
        SubscriptionPlan.PREMIUM: settings.stripe_price_premium,
    }.get(SubscriptionPlan(plan))

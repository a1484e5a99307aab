"""
Billing Module

Subscription plans, Stripe checkout and Stripe webhook handling.
"""

from .plans import PLAN_LIMITS, can_use_feature, has_access

__all__ = ['PLAN_LIMITS', 'can_use_feature', 'has_access']

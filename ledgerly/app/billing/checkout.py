"""
Stripe checkout and customer portal sessions
"""

import logging
from typing import Optional

import stripe
from sqlalchemy.orm import Session

from ledgerly.app.models import SubscriptionPlan, User
from ledgerly.config import get_settings
from .plans import plan_to_price

logger = logging.getLogger(__name__)


class BillingError(Exception):
    pass


_http_client = None


def configure_stripe():
    """Set the API key and a request timeout for the Stripe SDK."""
    global _http_client
    settings = get_settings()
    stripe.api_key = settings.stripe_secret_key
    if _http_client is None:
        # The SDK default waits 80s per request
        _http_client = stripe.RequestsClient(timeout=settings.stripe_timeout_seconds)
        stripe.default_http_client = _http_client


def ensure_customer(db: Session, user: User) -> str:
    """Return the user's Stripe customer id, creating the customer on first use."""
    if user.stripe_customer_id:
        return user.stripe_customer_id

    configure_stripe()
    customer = stripe.Customer.create(
        email=user.email,
        name=user.full_name,
        metadata={'user_id': str(user.id)},
    )
    user.stripe_customer_id = customer['id']
    db.commit()

    logger.info(f"Created Stripe customer {customer['id']} for user {user.id}")
    return customer['id']


def create_checkout_session(
    db: Session,
    user: User,
    plan: SubscriptionPlan,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None
) -> str:
    """
    Start a subscription checkout for a paid plan.

    Returns:
        Hosted checkout URL

    Raises:
        BillingError: Plan has no price (the free plan)
    """
    price_id = plan_to_price(plan)
    if not price_id:
        raise BillingError(f"Plan {SubscriptionPlan(plan).value} cannot be purchased")

    settings = get_settings()
    customer_id = ensure_customer(db, user)

    configure_stripe()
    session = stripe.checkout.Session.create(
        customer=customer_id,
        mode='subscription',
        payment_method_types=['card'],
        line_items=[{'price': price_id, 'quantity': 1}],
        success_url=success_url or f"{settings.frontend_url}/dashboard?success=true",
        cancel_url=cancel_url or f"{settings.frontend_url}/pricing?canceled=true",
        metadata={'user_id': str(user.id), 'plan': SubscriptionPlan(plan).value},
    )
    return session['url']


def create_portal_session(user: User) -> str:
    """
    Open the Stripe billing portal for an existing customer.

    Raises:
        BillingError: User has never checked out
    """
    if not user.stripe_customer_id:
        raise BillingError("No Stripe customer found")

    configure_stripe()
    session = stripe.billing_portal.Session.create(
        customer=user.stripe_customer_id,
        return_url=f"{get_settings().frontend_url}/dashboard",
    )
    return session['url']

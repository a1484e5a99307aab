"""
Stripe webhook handling

Verifies webhook signatures and applies subscription events to users and
their subscription records. Stripe is the source of truth for billing; these
handlers only mirror its state.
"""

import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import stripe
from sqlalchemy.orm import Session

from ledgerly.app.models import Subscription, SubscriptionPlan, User
from .checkout import configure_stripe
from .plans import price_to_plan

logger = logging.getLogger(__name__)


class WebhookSignatureError(Exception):
    """The payload was not signed with our webhook secret."""


def construct_event(payload: bytes, signature: Optional[str], secret: str) -> Dict[str, Any]:
    """
    Verify the Stripe-Signature header and decode the event.

    Raises:
        WebhookSignatureError: Missing or invalid signature, a timestamp outside
            the tolerance window, or unparseable payload
    """
    if not signature:
        raise WebhookSignatureError("Missing Stripe-Signature header")

    try:
        body = payload.decode('utf-8')
        stripe.WebhookSignature.verify_header(body, signature, secret, stripe.Webhook.DEFAULT_TOLERANCE)
        return json.loads(body)
    except stripe.SignatureVerificationError as e:
        raise WebhookSignatureError(str(e)) from e
    except ValueError as e:
        raise WebhookSignatureError("Invalid webhook payload") from e


def _period_end(subscription: Dict[str, Any]) -> Optional[datetime]:
    # Newer API versions report the period per subscription item
    timestamp = subscription.get('current_period_end')
    if timestamp is None:
        items = (subscription.get('items') or {}).get('data') or []
        timestamp = items[0].get('current_period_end') if items else None
    return datetime.utcfromtimestamp(timestamp) if timestamp else None


def _price_id(subscription: Dict[str, Any]) -> Optional[str]:
    items = (subscription.get('items') or {}).get('data') or []
    if not items:
        return None
    return (items[0].get('price') or {}).get('id')


def handle_subscription_update(db: Session, subscription: Dict[str, Any]) -> None:
    customer_id = subscription.get('customer')
    plan = price_to_plan(_price_id(subscription))
    status = subscription.get('status')
    period_end = _period_end(subscription)

    user = db.query(User).filter(User.stripe_customer_id == customer_id).first()
    if user:
        user.subscription_plan = plan
        user.subscription_status = status

    record = db.query(Subscription).filter(
        Subscription.stripe_subscription_id == subscription['id']
    ).first()
    if record:
        record.plan = plan
        record.status = status
        record.current_period_end = period_end
        record.updated_at = datetime.utcnow()
    elif user:
        db.add(Subscription(
            user_id=user.id,
            stripe_subscription_id=subscription['id'],
            plan=plan,
            status=status,
            current_period_end=period_end,
        ))
    else:
        logger.warning(f"No user for Stripe customer {customer_id}, subscription {subscription['id']} not stored")

    db.commit()
    logger.info(f"Subscription updated for customer {customer_id}: {plan.value} ({status})")


def handle_subscription_deleted(db: Session, subscription: Dict[str, Any]) -> None:
    customer_id = subscription.get('customer')

    user = db.query(User).filter(User.stripe_customer_id == customer_id).first()
    if user:
        user.subscription_plan = SubscriptionPlan.FREE
        user.subscription_status = 'canceled'

    record = db.query(Subscription).filter(
        Subscription.stripe_subscription_id == subscription['id']
    ).first()
    if record:
        record.status = 'canceled'
        record.updated_at = datetime.utcnow()

    db.commit()
    logger.info(f"Subscription canceled for customer {customer_id}")


def handle_checkout_completed(db: Session, session: Dict[str, Any]) -> None:
    customer_id = session.get('customer')
    subscription_id = session.get('subscription')

    if subscription_id:
        # Fetch the subscription to get the latest details
        configure_stripe()
        subscription = stripe.Subscription.retrieve(subscription_id)
        handle_subscription_update(db, subscription)

    logger.info(f"Checkout completed for customer {customer_id}")


def handle_payment_succeeded(db: Session, invoice: Dict[str, Any]) -> None:
    customer_id = invoice.get('customer')

    if invoice.get('subscription'):
        user = db.query(User).filter(User.stripe_customer_id == customer_id).first()
        if user:
            user.subscription_status = 'active'
            db.commit()

    logger.info(f"Payment succeeded for customer {customer_id}")


def handle_payment_failed(db: Session, invoice: Dict[str, Any]) -> None:
    customer_id = invoice.get('customer')

    user = db.query(User).filter(User.stripe_customer_id == customer_id).first()
    if user:
        user.subscription_status = 'past_due'
        db.commit()

    logger.warning(f"Payment failed for customer {customer_id}")


EVENT_HANDLERS: Dict[str, Callable[[Session, Dict[str, Any]], None]] = {
    'customer.subscription.created': handle_subscription_update,
    'customer.subscription.updated': handle_subscription_update,
    'customer.subscription.deleted': handle_subscription_deleted,
    'checkout.session.completed': handle_checkout_completed,
    'invoice.payment_succeeded': handle_payment_succeeded,
    'invoice.payment_failed': handle_payment_failed,
}


def handle_event(db: Session, event) -> bool:
    """
    Dispatch a verified event to its handler.

    Returns:
        True if the event type is handled, False if it was only acknowledged
    """
    event_type = event['type']
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info(f"Unhandled Stripe event type: {event_type}")
        return False

    handler(db, event['data']['object'])
    return True

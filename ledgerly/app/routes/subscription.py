"""
Subscription Routes

Plan details, usage against plan limits, and Stripe checkout / portal links.
"""

import logging
from datetime import datetime
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from ledgerly.database import get_db
from ledgerly.app import models, schemas
from ledgerly.app.auth import get_current_active_user
from ledgerly.app.billing.checkout import BillingError, create_checkout_session, create_portal_session
from ledgerly.app.billing.plans import FEATURES, PLAN_LIMITS, can_use_feature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscription", tags=["subscription"])


def _usage(db: Session, user: models.User, feature: str) -> int:
    """Current usage counted against a numeric limit."""
    if feature == 'bank_connections':
        return db.query(models.BankConnection).filter(
            models.BankConnection.user_id == user.id,
            models.BankConnection.status == models.BankConnectionStatus.ACTIVE
        ).count()

    if feature == 'transactions':
        month_start = datetime.utcnow().replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        return db.query(models.Expense).filter(
            models.Expense.created_by_id == user.id,
            models.Expense.created_at >= month_start
        ).count()

    # No stored savings goals yet
    return 0


@router.get("", response_model=schemas.SubscriptionInfo)
def get_subscription(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    latest = db.query(models.Subscription).filter(
        models.Subscription.user_id == current_user.id
    ).order_by(models.Subscription.updated_at.desc()).first()

    return {
        'plan': current_user.subscription_plan,
        'status': current_user.subscription_status,
        'current_period_end': latest.current_period_end if latest else None,
        'limits': PLAN_LIMITS[current_user.subscription_plan],
    }


@router.get("/usage", response_model=schemas.UsageInfo)
def get_usage(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    limits = PLAN_LIMITS[current_user.subscription_plan]
    return {
        'plan': current_user.subscription_plan,
        'bank_connections': _usage(db, current_user, 'bank_connections'),
        'bank_connections_limit': limits['bank_connections'],
        'transactions_this_month': _usage(db, current_user, 'transactions'),
        'transactions_limit': limits['transactions'],
    }


@router.get("/can-use/{feature}", response_model=schemas.FeatureAccess)
def check_feature(
    feature: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """Whether the caller's plan allows one more use of a feature."""
    if feature not in FEATURES:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown feature: {feature}"
        )

    allowed = can_use_feature(current_user.subscription_plan, feature, _usage(db, current_user, feature))
    return {'feature': feature, 'allowed': allowed}


@router.post("/checkout", response_model=schemas.RedirectUrl)
def create_checkout(
    request: schemas.CheckoutRequest,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    try:
        url = create_checkout_session(
            db, current_user, request.plan,
            success_url=request.success_url,
            cancel_url=request.cancel_url
        )
    except BillingError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return {'url': url}


@router.post("/portal", response_model=schemas.RedirectUrl)
def create_portal(current_user: models.User = Depends(get_current_active_user)):
    try:
        url = create_portal_session(current_user)
    except BillingError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return {'url': url}

import logging
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session
from typing import Optional

from ledgerly.config import get_settings
from ledgerly.database import get_db
from ledgerly.app.billing.webhooks import WebhookSignatureError, construct_event, handle_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    db: Session = Depends(get_db)
):
    """
    Stripe event receiver.

    Unsigned or mis-signed payloads are rejected before anything is read from
    the database. Processing failures return 500 so Stripe retries delivery.
    """
    payload = await request.body()

    try:
        event = construct_event(payload, stripe_signature, get_settings().stripe_webhook_secret)
    except WebhookSignatureError as e:
        logger.warning(f"Rejected Stripe webhook: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

    try:
        # Handlers use the sync DB session and may call the Stripe API
        await run_in_threadpool(handle_event, db, event)
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to process Stripe event {event.get('id')} ({event.get('type')}): {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed"
        )

    return {"received": True}

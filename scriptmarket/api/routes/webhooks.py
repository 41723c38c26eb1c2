"""
Stripe webhook endpoint. Signature is verified before anything touches the database.
"""
import logging

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from scriptmarket.api.deps import raw_body
from scriptmarket.db.session import get_db
from scriptmarket.services.payments import stripe_gateway
from scriptmarket.services.webhooks.service import WebhookService, WebhookValidationError
from scriptmarket.utils.metrics import webhook_events_total

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
def stripe_webhook(
    payload: bytes = Depends(raw_body),
    stripe_signature: str | None = Header(default=None),
    db: Session = Depends(get_db),
):
    if not stripe_signature:
        raise HTTPException(status_code=400, detail="Missing Stripe-Signature header")
    try:
        event = stripe_gateway.construct_event(payload, stripe_signature)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning("webhook_signature_invalid", extra={"error": str(e)})
        webhook_events_total.labels(event_type="unknown", outcome="invalid").inc()
        raise HTTPException(status_code=400, detail="Invalid signature")

    event_type = event.get("type")
    try:
        return WebhookService(db).handle_event(event)
    except WebhookValidationError as e:
        db.rollback()
        logger.error("webhook_validation_failed", extra={"event_id": event.get("id"), "event_type": event_type, "error": str(e)})
        webhook_events_total.labels(event_type=event_type, outcome="invalid").inc()
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        db.rollback()
        logger.exception("webhook_processing_failed", extra={"event_id": event.get("id"), "event_type": event_type})
        webhook_events_total.labels(event_type=event_type, outcome="error").inc()
        raise HTTPException(status_code=500, detail="Webhook processing failed")

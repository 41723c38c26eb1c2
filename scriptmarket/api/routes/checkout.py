import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from scriptmarket.api.deps import require_service_key
from scriptmarket.db.session import get_db
from scriptmarket.schemas.checkout import CheckoutSessionIn, CheckoutSessionOut
from scriptmarket.services.checkout.service import CheckoutError, CheckoutService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/checkout", tags=["checkout"], dependencies=[Depends(require_service_key)])


@router.post("/sessions", response_model=CheckoutSessionOut)
def create_checkout_session(payload: CheckoutSessionIn, db: Session = Depends(get_db)):
    service = CheckoutService(db)
    try:
        return service.create_session(
            payload.buyer_id, payload.price_id, payload.success_url, payload.cancel_url
        )
    except CheckoutError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except stripe.StripeError as e:
        logger.error("checkout_stripe_error", extra={"buyer_id": payload.buyer_id, "error": str(e)})
        raise HTTPException(status_code=502, detail="Payment provider error")

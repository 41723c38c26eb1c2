import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from scriptmarket.api.deps import require_service_key
from scriptmarket.db.session import get_db
from scriptmarket.schemas.connect import OnboardingLinkIn
from scriptmarket.services.connect.service import ConnectError, ConnectService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/connect", tags=["connect"], dependencies=[Depends(require_service_key)])


def _stripe_failure(seller_id: str, e: stripe.StripeError) -> HTTPException:
    logger.error("connect_stripe_error", extra={"seller_id": seller_id, "error": str(e)})
    return HTTPException(status_code=502, detail="Payment provider error")


@router.post("/accounts/{seller_id}/onboarding-link")
def onboarding_link(seller_id: str, payload: OnboardingLinkIn, db: Session = Depends(get_db)):
    try:
        return ConnectService(db).onboarding_link(seller_id, payload.refresh_url, payload.return_url)
    except ConnectError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except stripe.StripeError as e:
        raise _stripe_failure(seller_id, e)


@router.post("/accounts/{seller_id}/refresh")
def refresh_account(seller_id: str, db: Session = Depends(get_db)):
    try:
        return ConnectService(db).refresh_account(seller_id)
    except ConnectError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except stripe.StripeError as e:
        raise _stripe_failure(seller_id, e)


@router.post("/accounts/{seller_id}/dashboard-link")
def dashboard_link(seller_id: str, db: Session = Depends(get_db)):
    try:
        return ConnectService(db).dashboard_link(seller_id)
    except ConnectError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except stripe.StripeError as e:
        raise _stripe_failure(seller_id, e)

"""
CheckoutService: Stripe Checkout sessions for program prices.

Funds settle on the platform account; sellers are paid by the payout
dispatcher after the clearance window, so no destination charge is attached.
"""
from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from scriptmarket.ledger.config import get_platform_fee_percent, to_cents
from scriptmarket.models.profile import Profile
from scriptmarket.models.program import Program, ProgramPrice
from scriptmarket.services.payments import stripe_gateway

logger = logging.getLogger(__name__)

# ProgramPrice.interval -> Stripe recurring params
RECURRING_INTERVALS = {
    "month": {"interval": "month"},
    "3_months": {"interval": "month", "interval_count": 3},
    "year": {"interval": "year"},
}


class CheckoutError(Exception):
    """Checkout cannot be started for this buyer/price."""


class CheckoutService:
    def __init__(self, db: Session):
        self.db = db

    def _load(self, buyer_id: str, price_id: str) -> tuple[Profile, ProgramPrice, Program, Profile]:
        buyer = self.db.query(Profile).filter(Profile.id == buyer_id).one_or_none()
        if buyer is None or not buyer.email:
            raise CheckoutError("Buyer profile not found")
        if not buyer.tradingview_username:
            raise CheckoutError(
                "TradingView username not found. Please add your TradingView username "
                "to your profile before purchasing."
            )

        price = self.db.query(ProgramPrice).filter(ProgramPrice.id == price_id).one_or_none()
        if price is None:
            raise CheckoutError("Price not found")
        program = self.db.query(Program).filter(Program.id == price.program_id).one_or_none()
        if program is None or program.status != "published":
            raise CheckoutError("Program is not available for purchase")

        seller = self.db.query(Profile).filter(Profile.id == program.seller_id).one_or_none()
        if seller is None or not seller.stripe_account_id:
            raise CheckoutError("Seller has not connected their Stripe account yet")
        if not seller.stripe_charges_enabled:
            raise CheckoutError("Seller's Stripe account is not enabled for charges")
        return buyer, price, program, seller

    def _persist(self, obj, field: str) -> None:
        """Store a freshly created Stripe id. Failures are logged, not raised."""
        try:
            self.db.add(obj)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning("checkout_stripe_id_persist_failed", extra={"error": f"{field}: {e}"})

    def ensure_stripe_price(self, program: Program, price: ProgramPrice) -> str:
        if price.stripe_price_id:
            return price.stripe_price_id

        if not program.stripe_product_id:
            program.stripe_product_id = stripe_gateway.create_product(
                program.title,
                program.description,
                metadata={"program_id": program.id, "seller_id": program.seller_id},
            )
            self._persist(program, "stripe_product_id")

        recurring = None
        if price.price_type == "recurring":
            recurring = RECURRING_INTERVALS.get(price.interval or "month")
            if recurring is None:
                raise CheckoutError(f"Unsupported billing interval: {price.interval}")

        price.stripe_price_id = stripe_gateway.create_price(
            program.stripe_product_id,
            unit_amount=to_cents(price.amount),
            currency=(price.currency or "usd").lower(),
            nickname=price.display_name or program.title,
            metadata={"program_id": program.id, "price_id": price.id},
            recurring=recurring,
        )
        self._persist(price, "stripe_price_id")
        return price.stripe_price_id

    def create_session(
        self,
        buyer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
    ) -> dict:
        """Raises CheckoutError on validation problems and stripe.StripeError on provider failure."""
        buyer, price, program, seller = self._load(buyer_id, price_id)
        stripe_price_id = self.ensure_stripe_price(program, price)
        customer_id = stripe_gateway.find_or_create_customer(buyer.email, buyer.id)

        fee_percent = seller.fee_percent if seller.fee_percent is not None else get_platform_fee_percent()
        metadata = {
            "program_id": program.id,
            "price_id": price.id,
            "seller_id": program.seller_id,
            "user_id": buyer.id,
            "price_type": price.price_type,
            "tradingview_username": buyer.tradingview_username,
            "fee_percent": str(fee_percent),
        }
        params = {
            "customer": customer_id,
            "payment_method_types": ["card"],
            "line_items": [{"price": stripe_price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        }
        if price.price_type == "recurring":
            params["mode"] = "subscription"
            subscription_data = {"metadata": {"user_id": buyer.id, "program_id": program.id}}
            if program.trial_period_days and program.trial_period_days > 0:
                subscription_data["trial_period_days"] = program.trial_period_days
            params["subscription_data"] = subscription_data
        else:
            params["mode"] = "payment"
            params["payment_intent_data"] = {"metadata": metadata}

        session = stripe_gateway.create_checkout_session(**params)
        logger.info(
            "checkout_session_created",
            extra={"program_id": program.id, "buyer_id": buyer.id, "seller_id": program.seller_id},
        )
        return {"url": session.url, "session_id": session.id}

"""
Stripe Connect onboarding for sellers.
charges_enabled gates checkout, payouts_enabled gates the payout dispatcher.
"""
import logging

from sqlalchemy.orm import Session

from scriptmarket.core.config import settings
from scriptmarket.models.profile import Profile
from scriptmarket.services.payments import stripe_gateway

logger = logging.getLogger(__name__)


class ConnectError(Exception):
    pass


class ConnectService:
    def __init__(self, db: Session):
        self.db = db

    def _profile(self, seller_id: str) -> Profile:
        profile = self.db.query(Profile).filter(Profile.id == seller_id).one_or_none()
        if profile is None:
            raise ConnectError("Seller profile not found")
        return profile

    def onboarding_link(self, seller_id: str, refresh_url: str, return_url: str) -> dict:
        profile = self._profile(seller_id)
        if not profile.stripe_account_id:
            account = stripe_gateway.create_express_account(profile.email, settings.stripe_connect_country)
            profile.stripe_account_id = account.id
            self.db.add(profile)
            self.db.commit()
            logger.info("connect_account_created", extra={"seller_id": seller_id})

        url = stripe_gateway.create_account_link(profile.stripe_account_id, refresh_url, return_url)
        return {"account_id": profile.stripe_account_id, "url": url}

    def refresh_account(self, seller_id: str) -> dict:
        profile = self._profile(seller_id)
        if not profile.stripe_account_id:
            raise ConnectError("Seller has no connected Stripe account")

        account = stripe_gateway.retrieve_account(profile.stripe_account_id)
        profile.stripe_onboarding_completed = bool(account.details_submitted)
        profile.stripe_charges_enabled = bool(account.charges_enabled)
        profile.stripe_payouts_enabled = bool(account.payouts_enabled)
        self.db.add(profile)
        self.db.commit()
        logger.info(
            "connect_account_refreshed",
            extra={"seller_id": seller_id, "outcome": "payouts_enabled" if account.payouts_enabled else "pending"},
        )
        return {
            "details_submitted": profile.stripe_onboarding_completed,
            "charges_enabled": profile.stripe_charges_enabled,
            "payouts_enabled": profile.stripe_payouts_enabled,
        }

    def dashboard_link(self, seller_id: str) -> dict:
        profile = self._profile(seller_id)
        if not profile.stripe_account_id:
            raise ConnectError("Seller has no connected Stripe account")
        return {"url": stripe_gateway.create_login_link(profile.stripe_account_id)}

"""
Payout methods. The dispatcher only asks a method whether it can run and then
executes it; adding a rail means adding a class here and a branch in resolve_method.
"""
from __future__ import annotations

from scriptmarket.ledger.config import get_payout_currency, to_cents
from scriptmarket.models.payout import Payout
from scriptmarket.models.profile import Profile
from scriptmarket.services.payments import stripe_gateway


class PayoutMethod:
    name = "none"

    def unavailable_reason(self) -> str | None:
        """None when the method can move money, otherwise the failure_reason to record."""
        return None

    def execute(self, payout: Payout) -> str:
        """Send payout.amount to the seller. Returns the provider reference."""
        raise NotImplementedError


class ConnectedTransfer(PayoutMethod):
    """Stripe Connect transfer from the platform balance to the seller's Express account."""

    name = "connected_transfer"

    def __init__(self, account_id: str, currency: str | None = None) -> None:
        self.account_id = account_id
        self.currency = currency or get_payout_currency()

    def execute(self, payout: Payout) -> str:
        transfer = stripe_gateway.create_transfer(
            amount=to_cents(payout.amount),
            currency=self.currency,
            destination=self.account_id,
            idempotency_key=f"payout-{payout.id}",
            metadata={"payout_id": payout.id, "seller_id": payout.seller_id},
        )
        return transfer.id


class BankTransfer(PayoutMethod):
    name = "bank_transfer"

    def unavailable_reason(self) -> str | None:
        return "Bank transfer payouts are not supported; connect a Stripe account"


class PayPal(PayoutMethod):
    name = "paypal"

    def unavailable_reason(self) -> str | None:
        return "PayPal integration not yet implemented"


class Unconfigured(PayoutMethod):
    name = "none"

    def unavailable_reason(self) -> str | None:
        return "No connected payout account with transfers enabled"


def resolve_method(profile: Profile | None) -> PayoutMethod:
    if profile is None:
        return Unconfigured()
    if profile.payout_method == "bank_transfer":
        return BankTransfer()
    if profile.payout_method == "paypal":
        return PayPal()
    if profile.stripe_account_id and profile.stripe_payouts_enabled:
        return ConnectedTransfer(profile.stripe_account_id)
    return Unconfigured()


"""
Thin wrapper over the stripe SDK.

All outbound Stripe calls go through here so they share one api_key setup and
the "stripe" circuit breaker. Callers handle stripe.StripeError; an open
circuit surfaces as stripe.APIConnectionError.
"""
import json
import logging

import pybreaker
import stripe

from scriptmarket.core.config import settings
from scriptmarket.services.circuit_breaker import get_circuit_breaker

logger = logging.getLogger(__name__)

stripe.api_key = settings.stripe_secret_key
stripe.api_version = settings.stripe_api_version


def _breaker() -> pybreaker.CircuitBreaker:
    # client-side errors do not count as breaker failures
    return get_circuit_breaker(
        "stripe",
        exclude=[stripe.InvalidRequestError, stripe.CardError, stripe.IdempotencyError],
    )


def _call(func, *args, **kwargs):
    try:
        return _breaker().call(func, *args, **kwargs)
    except pybreaker.CircuitBreakerError as e:
        raise stripe.APIConnectionError("Stripe temporarily unavailable (circuit open)") from e


def construct_event(payload: bytes, signature: str) -> dict:
    """
    Verify the Stripe-Signature header and return the event as a plain dict.
    Raises ValueError (bad JSON) or stripe.SignatureVerificationError.
    """
    stripe.Webhook.construct_event(payload, signature, settings.stripe_webhook_secret)
    return json.loads(payload)


# ----------------------------------------------------------------------
# Checkout
# ----------------------------------------------------------------------

def find_or_create_customer(email: str, user_id: str) -> str:
    found = _call(stripe.Customer.list, email=email, limit=1)
    if found.data:
        return found.data[0].id
    created = _call(stripe.Customer.create, email=email, metadata={"user_id": user_id})
    logger.info("stripe_customer_created", extra={"buyer_id": user_id})
    return created.id


def create_product(name: str, description: str | None, metadata: dict) -> str:
    params = {"name": name, "metadata": metadata}
    if description:
        params["description"] = description
    return _call(stripe.Product.create, **params).id


def create_price(
    product_id: str,
    unit_amount: int,
    currency: str,
    nickname: str,
    metadata: dict,
    recurring: dict | None = None,
) -> str:
    params = {
        "product": product_id,
        "unit_amount": unit_amount,
        "currency": currency,
        "nickname": nickname,
        "metadata": metadata,
    }
    if recurring:
        params["recurring"] = recurring
    return _call(stripe.Price.create, **params).id


def create_checkout_session(**params):
    return _call(stripe.checkout.Session.create, **params)


# ----------------------------------------------------------------------
# Connect & transfers
# ----------------------------------------------------------------------

def create_express_account(email: str | None, country: str):
    return _call(stripe.Account.create, type="express", country=country, email=email)


def create_account_link(account_id: str, refresh_url: str, return_url: str) -> str:
    link = _call(
        stripe.AccountLink.create,
        account=account_id,
        refresh_url=refresh_url,
        return_url=return_url,
        type="account_onboarding",
    )
    return link.url


def retrieve_account(account_id: str):
    return _call(stripe.Account.retrieve, account_id)


def create_transfer(
    amount: int,
    currency: str,
    destination: str,
    idempotency_key: str,
    metadata: dict,
):
    return _call(
        stripe.Transfer.create,
        amount=amount,
        currency=currency,
        destination=destination,
        metadata=metadata,
        idempotency_key=idempotency_key,
    )


def create_login_link(account_id: str) -> str:
    return _call(stripe.Account.create_login_link, account_id).url

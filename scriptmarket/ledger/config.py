"""
Ledger config: typed wrappers over scriptmarket.core.config.settings.
"""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from scriptmarket.core.config import settings

CENT = Decimal("0.01")


def get_platform_fee_percent() -> Decimal:
    return Decimal(settings.platform_fee_percent)


def get_clearance_days() -> int:
    return settings.clearance_days


def get_payout_minimum() -> Decimal:
    return Decimal(settings.payout_minimum)


def get_payout_currency() -> str:
    return settings.payout_currency


def to_money(value) -> Decimal:
    """Coerce to Decimal rounded half-up to cents."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(value) -> int:
    return int(to_money(value) * 100)


def from_cents(value) -> Decimal:
    """Stripe minor units (int) to a money Decimal."""
    return to_money(Decimal(int(value or 0)) / 100)


def split_amount(amount, fee_percent=None) -> tuple[Decimal, Decimal]:
    """Return (platform_fee, seller_owed) for a gross amount."""
    percent = get_platform_fee_percent() if fee_percent is None else Decimal(str(fee_percent))
    gross = to_money(amount)
    fee = to_money(gross * percent / Decimal("100"))
    return fee, gross - fee

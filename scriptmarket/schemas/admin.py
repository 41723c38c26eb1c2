"""
Operator API schemas.
"""
from decimal import Decimal

from pydantic import BaseModel


class TrialGrantIn(BaseModel):
    program_id: str
    buyer_id: str
    tradingview_username: str


class AssignmentOut(BaseModel):
    id: str
    status: str
    pine_id: str | None
    tradingview_username: str | None
    is_trial: bool
    error_message: str | None = None


class SellerBalanceOut(BaseModel):
    seller_id: str
    pending_balance: Decimal
    available_balance: Decimal
    total_earned: Decimal
    total_paid_out: Decimal

"""
SellerBalance: materialized balance per seller.
Only LedgerService.apply_delta writes it, always under a row lock, and always
together with a BalanceTransaction entry.
"""
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import Column, DateTime, Numeric, String

from scriptmarket.db.base import Base


class SellerBalance(Base):
    __tablename__ = "seller_balances"

    seller_id = Column(String, primary_key=True)
    pending_balance = Column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    available_balance = Column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    total_earned = Column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    total_paid_out = Column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

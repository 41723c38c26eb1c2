"""
Purchase model: one row per paid checkout.
payment_intent_id is unique: duplicate webhook delivery must not create a second purchase.
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, Numeric, String

from scriptmarket.db.base import Base


class Purchase(Base):
    __tablename__ = "purchases"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    program_id = Column(String, nullable=False, index=True)
    price_id = Column(String, nullable=True)
    buyer_id = Column(String, nullable=False, index=True)
    seller_id = Column(String, nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    platform_fee = Column(Numeric(12, 2), nullable=False)
    seller_owed = Column(Numeric(12, 2), nullable=False)
    status = Column(String, nullable=False, default="completed")  # pending / completed / failed / refunded
    payment_intent_id = Column(String, unique=True, nullable=False)  # payment_intent or checkout session id
    checkout_session_id = Column(String, nullable=True)
    subscription_id = Column(String, nullable=True, index=True)  # Stripe subscription for recurring prices
    tradingview_username = Column(String, nullable=True)
    settled_at = Column(DateTime(timezone=True), nullable=True)  # set once seller_owed moved to available
    purchased_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

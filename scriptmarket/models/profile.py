from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Numeric, String, Text

from scriptmarket.db.base import Base


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    email = Column(String, nullable=True, index=True)
    display_name = Column(String, nullable=True)

    # TradingView (buyer: username to receive access; seller: session used to grant it)
    tradingview_username = Column(String, nullable=True)
    tradingview_session_cookie = Column(Text, nullable=True)  # AES-GCM, base64(iv + ciphertext)
    tradingview_signed_session_cookie = Column(Text, nullable=True)
    is_tradingview_connected = Column(Boolean, nullable=False, default=False)
    tradingview_last_validated_at = Column(DateTime(timezone=True), nullable=True)
    tradingview_connection_status = Column(String, nullable=True)  # active / expired / error
    tradingview_last_error = Column(Text, nullable=True)

    # Stripe Connect
    stripe_account_id = Column(String, nullable=True)
    stripe_charges_enabled = Column(Boolean, nullable=False, default=False)
    stripe_payouts_enabled = Column(Boolean, nullable=False, default=False)
    stripe_onboarding_completed = Column(Boolean, nullable=False, default=False)

    # Payouts
    payout_method = Column(String, nullable=True)  # connected_transfer / bank_transfer / paypal
    fee_percent = Column(Numeric(5, 2), nullable=True)  # null = platform default

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

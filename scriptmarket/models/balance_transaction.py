from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, Numeric, String, Text

from scriptmarket.db.base import Base


class BalanceTransaction(Base):
    __tablename__ = "balance_transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    seller_id = Column(String, nullable=False, index=True)
    kind = Column(String, nullable=False)  # sale / settlement / payout / refund
    pending_delta = Column(Numeric(12, 2), nullable=False)
    available_delta = Column(Numeric(12, 2), nullable=False)
    purchase_id = Column(String, nullable=True, index=True)
    payout_id = Column(String, nullable=True, index=True)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

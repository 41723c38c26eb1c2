from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB

from scriptmarket.db.base import Base

OPEN_STATUSES = ("pending", "assigned", "failed")


class ScriptAssignment(Base):
    __tablename__ = "script_assignments"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    purchase_id = Column(String, nullable=True, index=True)  # null for trials
    program_id = Column(String, nullable=False, index=True)
    buyer_id = Column(String, nullable=False, index=True)
    seller_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="pending")  # pending / assigned / failed / expired / revoked
    access_type = Column(String, nullable=False, default="full_purchase")  # full_purchase / subscription / trial
    is_trial = Column(Boolean, nullable=False, default=False)
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    tradingview_username = Column(String, nullable=True)
    pine_id = Column(String, nullable=True)
    assigned_at = Column(DateTime(timezone=True), nullable=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    assignment_attempts = Column(Integer, nullable=False, default=0)
    assignment_details = Column(JSONB, nullable=False, default=dict)
    created_at = Column(
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

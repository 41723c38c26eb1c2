from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, String, Text
from sqlalchemy.dialects.postgresql import JSONB

from scriptmarket.db.base import Base


class AssignmentLog(Base):
    __tablename__ = "assignment_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    assignment_id = Column(String, nullable=False, index=True)
    purchase_id = Column(String, nullable=True)
    log_level = Column(String, nullable=False, default="info")
    message = Column(Text, nullable=False)
    details = Column(JSONB, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

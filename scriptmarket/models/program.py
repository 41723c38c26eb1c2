from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, Integer, Numeric, String, Text, UniqueConstraint

from scriptmarket.db.base import Base


class Program(Base):
    __tablename__ = "programs"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    seller_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="draft")  # draft / published
    trial_period_days = Column(Integer, nullable=True)
    tradingview_script_id = Column(String, nullable=True)  # legacy single-script link
    stripe_product_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))


class ProgramPrice(Base):
    __tablename__ = "program_prices"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    program_id = Column(String, nullable=False, index=True)
    price_type = Column(String, nullable=False, default="one_time")  # one_time / recurring
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String, nullable=True)
    interval = Column(String, nullable=True)  # month / 3_months / year
    display_name = Column(String, nullable=False, default="")
    stripe_price_id = Column(String, nullable=True)


class ProgramScript(Base):
    __tablename__ = "program_scripts"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    program_id = Column(String, nullable=False, index=True)
    pine_id = Column(String, nullable=False)
    display_order = Column(Integer, nullable=False, default=0)


class TradingViewScript(Base):
    __tablename__ = "tradingview_scripts"
    __table_args__ = (UniqueConstraint("user_id", "script_id", name="uq_tradingview_scripts_user_script"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, nullable=False, index=True)
    script_id = Column(String, nullable=False)
    title = Column(String, nullable=False)
    publication_url = Column(String, nullable=False)
    image_url = Column(String, nullable=True)
    likes = Column(Integer, nullable=False, default=0)
    reviews_count = Column(Integer, nullable=False, default=0)
    last_synced_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

"""PromoCode model. Redemptions live in the credit ledger, not here."""

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from database import Base


class PromoCode(Base):
    """Promotional code definition."""

    __tablename__ = "promo_codes"

    code = Column(String(32), primary_key=True)  # stored upper-cased and trimmed
    credit_amount = Column(Integer, nullable=False, default=0)
    subscription_tier = Column(String, nullable=False, default="none")
    subscription_days = Column(Integer, nullable=False, default=0)
    single_use_per_account = Column(Boolean, nullable=False, default=True)
    max_uses = Column(Integer, nullable=True)  # across all accounts; null is unlimited
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

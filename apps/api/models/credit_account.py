"""CreditAccount model: per-user counters, flags and subscription overlay state."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


SUBSCRIPTION_TIERS = ("none", "starter", "pro")


class CreditAccount(Base):
    """One row per user. Never stores a balance; the ledger is the source of truth."""

    __tablename__ = "credit_accounts"

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    total_checks_performed = Column(Integer, nullable=False, default=0)
    subscription_status = Column(String, nullable=False, default="none")  # none, starter, pro
    subscription_end_date = Column(DateTime(timezone=True), nullable=True)
    starter_pack_purchased = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="credit_account")

"""CreditTransaction model for the append-only credit ledger."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditTransaction(Base):
    """Immutable credit ledger entry. Negative delta = debit, positive = grant."""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        Index("ix_credit_transactions_user_expires", "user_id", "expires_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    delta = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=True)  # snapshot at write time, not read for balances
    reason = Column(String, nullable=False)
    job_id = Column(String, nullable=True, unique=True)  # debits only
    ext_ref = Column(String, nullable=True, unique=True)  # grants only
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="credit_transactions")

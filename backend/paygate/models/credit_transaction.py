"""CreditTransaction model"""
from sqlalchemy import Column, Integer, String, ForeignKey, JSON, Index, DateTime, Numeric
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from paygate.models.base import Base


class CreditTransaction(Base):
    """Append-only credit ledger"""
    __tablename__ = "credit_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Numeric(14, 2), nullable=False)  # Positive for grants, negative for spend
    transaction_type = Column(String(50), nullable=False)  # 'topup', 'subscription', 'admin', 'spend'
    transaction_metadata = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)

    user = relationship("User", back_populates="credit_transactions")

    __table_args__ = (
        Index('ix_credit_transactions_user_created', 'user_id', 'created_at'),
    )

"""CheckoutSession model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index
from datetime import datetime, timezone
from paygate.models.base import Base


class CheckoutSession(Base):
    """A hosted checkout we asked the processor to open"""
    __tablename__ = "checkout_sessions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    processor_session_id = Column(String(255), unique=True, nullable=False, index=True)
    product_class = Column(String(20), nullable=False)
    internal_reference = Column(String(255), nullable=False)
    amount_cents = Column(Integer, nullable=True)
    status = Column(String(20), default="pending", nullable=False)  # 'pending', 'completed', 'cancelled'
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        Index('ix_checkout_sessions_user_status', 'user_id', 'status'),
    )

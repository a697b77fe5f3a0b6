"""PaymentEvent model"""
from sqlalchemy import Column, Integer, String, DateTime
from datetime import datetime, timezone
from paygate.models.base import Base


class PaymentEvent(Base):
    """Applied-event marker. A row exists iff the event's ledger effect was committed."""
    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    channel = Column(String(20), nullable=False)  # 'redirect', 'webhook', 'charge'
    event_type = Column(String(100), nullable=False)
    user_id = Column(String(64), nullable=True, index=True)
    internal_reference = Column(String(255), nullable=True)
    applied_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

"""WebhookLog model"""
from sqlalchemy import Column, Integer, String, Text, JSON, DateTime
from datetime import datetime, timezone
from paygate.models.base import Base


class WebhookLog(Base):
    """Audit trail for inbound payment events, including ones needing manual review"""
    __tablename__ = "webhook_logs"

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(50), default="fanbases", nullable=False)
    channel = Column(String(20), nullable=False)
    event_type = Column(String(100), nullable=False, index=True)
    event_id = Column(String(255), nullable=True, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    status = Column(String(30), nullable=False, index=True)  # 'processed', 'duplicate', 'user_not_found', 'unmapped_product', 'manual_review', 'failed', 'unhandled'
    payload = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

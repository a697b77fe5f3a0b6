"""ProcessorCustomer model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from paygate.models.base import Base


class ProcessorCustomer(Base):
    """Processor-side customer and stored payment method for one-click charges"""
    __tablename__ = "processor_customers"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True, index=True)
    processor_customer_id = Column(String(255), nullable=False, index=True)
    payment_method_id = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    user = relationship("User", back_populates="processor_customer")

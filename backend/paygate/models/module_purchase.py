"""ModulePurchase model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from paygate.models.base import Base


class ModulePurchase(Base):
    """One-time module purchase. Insert-once per (user, reference)."""
    __tablename__ = "module_purchases"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    internal_reference = Column(String(255), nullable=False)
    charge_id = Column(String(255), nullable=True)
    amount_cents = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    user = relationship("User", back_populates="module_purchases")

    __table_args__ = (
        UniqueConstraint("user_id", "internal_reference", name="uq_module_purchases_user_reference"),
    )

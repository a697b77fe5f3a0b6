"""SpecialAccess model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from paygate.models.base import Base


class SpecialAccess(Base):
    """Manually granted access, e.g. the coaching dashboard after a booked call"""
    __tablename__ = "special_access"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    access_type = Column(String(50), nullable=False)  # 'dashboard'
    granted_by = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    user = relationship("User", back_populates="special_access")

    __table_args__ = (
        UniqueConstraint("user_id", "access_type", name="uq_special_access_user_type"),
    )

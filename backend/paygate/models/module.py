"""Module model"""
from sqlalchemy import Column, Integer, String
from paygate.models.base import Base


class Module(Base):
    """A course module and the policy that gates it"""
    __tablename__ = "modules"

    id = Column(String(100), primary_key=True)  # slug
    name = Column(String(255), nullable=False)
    access_type = Column(String(30), default="free", nullable=False)  # 'free', 'tier_required', 'purchase_required', 'book_a_call'
    required_tier = Column(String(20), nullable=True)
    internal_reference = Column(String(255), nullable=True)  # catalog reference for purchase_required modules
    booking_url = Column(String(500), nullable=True)
    order_index = Column(Integer, default=0, nullable=False)

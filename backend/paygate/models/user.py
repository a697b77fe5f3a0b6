"""User model"""
from decimal import Decimal
from sqlalchemy import Column, String, DateTime, Numeric, CheckConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from paygate.models.base import Base


class User(Base):
    """User accounts mirrored from the identity service"""
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)  # Opaque id issued by the auth provider
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=True)
    credits = Column(Numeric(14, 2), default=Decimal("0"), nullable=False)
    subscription_tier = Column(String(20), default="free", nullable=False)  # 'free', 'tier1', 'tier2'
    trial_started_at = Column(DateTime(timezone=True), nullable=True)
    trial_ends_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    subscription = relationship("Subscription", back_populates="user", uselist=False, cascade="all, delete-orphan")
    credit_transactions = relationship("CreditTransaction", back_populates="user", cascade="all, delete-orphan")
    module_purchases = relationship("ModulePurchase", back_populates="user", cascade="all, delete-orphan")
    special_access = relationship("SpecialAccess", back_populates="user", cascade="all, delete-orphan")
    processor_customer = relationship("ProcessorCustomer", back_populates="user", uselist=False, cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),
    )

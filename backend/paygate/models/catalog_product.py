"""CatalogProduct model"""
from sqlalchemy import Column, Integer, String, DateTime
from datetime import datetime, timezone
from paygate.models.base import Base


class CatalogProduct(Base):
    """Maps a processor product to an internal reference and product class"""
    __tablename__ = "catalog_products"

    id = Column(Integer, primary_key=True, index=True)
    processor_product_id = Column(String(255), unique=True, nullable=False, index=True)
    product_class = Column(String(20), nullable=False)  # 'module', 'subscription', 'topup', 'card_setup'
    internal_reference = Column(String(255), unique=True, nullable=False, index=True)
    price_cents = Column(Integer, nullable=True)
    title = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

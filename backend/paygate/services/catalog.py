"""Product catalog - maps processor products to internal references"""
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, Optional

from sqlalchemy.orm import Session

from paygate.core.errors import ProductNotFound
from paygate.models.catalog_product import CatalogProduct

logger = logging.getLogger(__name__)

PRODUCT_CLASSES = ("module", "subscription", "topup", "card_setup")

# Subscription plans: internal reference -> tier and credits granted on activation
SUBSCRIPTION_PLANS = {
    "tier1": {"tier": "tier1", "credits": Decimal("10000")},
    "tier2": {"tier": "tier2", "credits": Decimal("40000")},
}

# Legacy references still attached to older processor products
PLAN_ALIASES = {
    "starter": "tier1",
    "pro": "tier2",
}

_LEADING_INT = re.compile(r"^\s*(\d+)")


@dataclass(frozen=True)
class CatalogEntry:
    processor_product_id: str
    product_class: str
    internal_reference: str
    price_cents: Optional[int] = None
    title: Optional[str] = None


def resolve_plan(internal_reference: str) -> Dict:
    """Return the plan for a subscription reference.

    Unknown references raise instead of defaulting to a tier so a mistyped
    catalog row never grants the wrong credits.
    """
    key = (internal_reference or "").strip().lower()
    key = PLAN_ALIASES.get(key, key)
    plan = SUBSCRIPTION_PLANS.get(key)
    if not plan:
        raise ProductNotFound(
            f"Unknown subscription plan '{internal_reference}'",
            details={"internal_reference": internal_reference}
        )
    return plan


def parse_topup_credits(internal_reference: str) -> Decimal:
    """Credits in a top-up reference: the leading integer ("2500_credits" -> 2500)"""
    match = _LEADING_INT.match(internal_reference or "")
    if not match:
        raise ProductNotFound(
            f"Top-up reference '{internal_reference}' does not start with a credit amount",
            details={"internal_reference": internal_reference}
        )
    return Decimal(match.group(1))


class ProductCatalog(ABC):
    """Read-only lookup of catalog entries"""

    @abstractmethod
    def get_by_reference(self, internal_reference: str) -> Optional[CatalogEntry]:
        pass

    @abstractmethod
    def get_by_processor_id(self, processor_product_id: str) -> Optional[CatalogEntry]:
        pass

    def require_by_reference(self, internal_reference: str) -> CatalogEntry:
        entry = self.get_by_reference(internal_reference)
        if entry is None:
            raise ProductNotFound(
                f"No catalog product for reference '{internal_reference}'",
                details={"internal_reference": internal_reference}
            )
        return entry


class InMemoryProductCatalog(ProductCatalog):
    """Catalog backed by a fixed list of entries"""

    def __init__(self, entries: Iterable[CatalogEntry] = ()):
        self._by_reference = {}
        self._by_processor_id = {}
        for entry in entries:
            self.add(entry)

    def add(self, entry: CatalogEntry) -> None:
        if entry.product_class not in PRODUCT_CLASSES:
            raise ValueError(f"Unknown product class: {entry.product_class}")
        self._by_reference[entry.internal_reference] = entry
        self._by_processor_id[entry.processor_product_id] = entry

    def get_by_reference(self, internal_reference):
        return self._by_reference.get(internal_reference)

    def get_by_processor_id(self, processor_product_id):
        return self._by_processor_id.get(str(processor_product_id))


class SqlProductCatalog(ProductCatalog):
    """Catalog read from the catalog_products table"""

    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def _to_entry(row: Optional[CatalogProduct]) -> Optional[CatalogEntry]:
        if row is None:
            return None
        return CatalogEntry(
            processor_product_id=row.processor_product_id,
            product_class=row.product_class,
            internal_reference=row.internal_reference,
            price_cents=row.price_cents,
            title=row.title
        )

    def get_by_reference(self, internal_reference):
        if not internal_reference:
            return None
        row = self.db.query(CatalogProduct).filter(
            CatalogProduct.internal_reference == internal_reference
        ).first()
        return self._to_entry(row)

    def get_by_processor_id(self, processor_product_id):
        if not processor_product_id:
            return None
        row = self.db.query(CatalogProduct).filter(
            CatalogProduct.processor_product_id == str(processor_product_id)
        ).first()
        return self._to_entry(row)


def get_catalog(db: Session) -> ProductCatalog:
    """Default catalog for request handlers"""
    return SqlProductCatalog(db)


def upsert_catalog_product(entry: CatalogEntry, db: Session) -> CatalogProduct:
    """Create or update a catalog row keyed by internal reference (admin tooling only)"""
    if entry.product_class not in PRODUCT_CLASSES:
        raise ValueError(f"Unknown product class: {entry.product_class}")
    if entry.product_class == "subscription":
        resolve_plan(entry.internal_reference)
    elif entry.product_class == "topup":
        parse_topup_credits(entry.internal_reference)

    row = db.query(CatalogProduct).filter(
        CatalogProduct.internal_reference == entry.internal_reference
    ).first()
    if row is None:
        row = CatalogProduct(internal_reference=entry.internal_reference)
        db.add(row)

    row.processor_product_id = str(entry.processor_product_id)
    row.product_class = entry.product_class
    row.price_cents = entry.price_cents
    row.title = entry.title
    db.commit()
    db.refresh(row)
    logger.info(f"Catalog product {entry.internal_reference} -> {entry.processor_product_id} ({entry.product_class})")
    return row

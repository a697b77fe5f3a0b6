#!/usr/bin/env python3
"""
Load processor products into the catalog.

Usage:
    python seed_catalog.py --file products.json

products.json is a list of objects:
    [{"processor_product_id": "prod_123", "product_class": "topup",
      "internal_reference": "2500_credits", "price_cents": 2500, "title": "2,500 credits"}]
"""

import argparse
import json
import sys
import os

# Add parent directory to path to import backend modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from paygate.db.session import SessionLocal, init_db
from paygate.core.errors import ProductNotFound
from paygate.services.catalog import CatalogEntry, upsert_catalog_product


def seed(path: str) -> bool:
    with open(path, encoding="utf-8") as f:
        items = json.load(f)

    init_db()
    db = SessionLocal()
    try:
        for item in items:
            entry = CatalogEntry(
                processor_product_id=str(item["processor_product_id"]),
                product_class=item["product_class"],
                internal_reference=item["internal_reference"],
                price_cents=item.get("price_cents"),
                title=item.get("title")
            )
            upsert_catalog_product(entry, db)
            print(f"✅ {entry.internal_reference} → {entry.processor_product_id} ({entry.product_class})")
        return True
    except (KeyError, ValueError, ProductNotFound) as e:
        print(f"❌ Invalid catalog entry: {e}")
        db.rollback()
        return False
    finally:
        db.close()


def main():
    parser = argparse.ArgumentParser(
        description='Seed the product catalog from a JSON file',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--file', required=True, help='Path to the products JSON file')
    args = parser.parse_args()

    sys.exit(0 if seed(args.file) else 1)


if __name__ == '__main__':
    main()

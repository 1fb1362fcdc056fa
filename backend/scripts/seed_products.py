#!/usr/bin/env python3
"""
Seed the storefront catalogue from a JSON file.

Accepts either a list of products or an object with an "items" list. Each entry
needs a sku (or id) and a name; price may be given as "price" (decimal) or
"price_cents". The age gate relies on "age_restricted" (also read as
"ageRestricted", or the string "true"). The default catalogue from app.db is
always ensured.

Usage:
    python scripts/seed_products.py --file ../public/mock/catalogue.json
"""
import argparse
import json
import os
import sys
from decimal import Decimal, InvalidOperation

# allow running from repo/scripts
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from app.db import SessionLocal, init_db
from app.repositories.product_repo import ProductRepository

DEFAULT_SOURCE = os.path.join(os.path.dirname(__file__), "..", "public", "mock", "catalogue.json")


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


def _normalize_entry(entry):
    """Return a normalized dict with keys: sku, name, price, category, age_restricted, description, image"""
    sku = entry.get("sku") or entry.get("id") or entry.get("productId")
    name = entry.get("name") or entry.get("title") or ""
    try:
        if entry.get("price_cents") is not None:
            price = Decimal(str(entry["price_cents"])) / 100
        else:
            price = Decimal(str(entry.get("price", entry.get("amount", 0))))
    except InvalidOperation:
        price = Decimal("0")

    image = entry.get("image")
    if not image:
        imgs = entry.get("images") or []
        image = imgs[0] if isinstance(imgs, (list, tuple)) and imgs else None

    return {
        "sku": sku,
        "name": name,
        "price": price,
        "category": entry.get("category"),
        "age_restricted": _as_bool(entry.get("age_restricted", entry.get("ageRestricted", False))),
        "description": entry.get("description") or "",
        "image": image,
    }


def seed_from_file(path: str) -> int:
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = json.load(f)
        except ValueError as e:
            raise RuntimeError(f"Failed to parse JSON from {path}: {e}")

    if isinstance(data, dict):
        source_list = data["items"] if isinstance(data.get("items"), list) else list(data.values())
    elif isinstance(data, list):
        source_list = data
    else:
        source_list = []

    db = SessionLocal()
    repo = ProductRepository(db)
    created = 0
    try:
        for entry in source_list:
            if not isinstance(entry, dict):
                continue
            norm = _normalize_entry(entry)
            if not norm["sku"]:
                continue
            repo.create_or_update(**norm)
            created += 1
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
    return created


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--file", "-f", default=DEFAULT_SOURCE, help="Path to product json (list or {items: [...]})")
    args = parser.parse_args()
    init_db()
    if not os.path.exists(args.file):
        print("File not found, default catalogue only:", args.file)
        sys.exit(0)
    print("Seeded products:", seed_from_file(args.file))

# catalog.py - read-only product/category/brand access + slug maintenance

import re
from datetime import datetime

from pymongo import ASCENDING, DESCENDING

from .db import now_dt
from .errors import NotFound
from .logger import get_logger

log = get_logger("catalog")

MAX_SLUG_SUFFIX = 1000


def create_slug(text):
    slug = str(text or "").lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_-]+", "-", slug)
    return slug.strip("-")


def unique_product_slug(db, name, exclude_id=None):
    base = create_slug(name) or "product"

    def taken(candidate):
        q = {"slug": candidate}
        if exclude_id:
            q["_internal_id"] = {"$ne": exclude_id}
        return db.products.find_one(q, {"_id": 1}) is not None

    if not taken(base):
        return base
    for n in range(1, MAX_SLUG_SUFFIX + 1):
        candidate = f"{base}-{n}"
        if not taken(candidate):
            return candidate
    return f"{base}-{int(datetime.utcnow().timestamp() * 1000)}"


def migrate_product_slugs(db):
    """Give every product without a slug one. Returns how many were updated."""
    updated = 0
    cur = db.products.find({"$or": [{"slug": {"$exists": False}}, {"slug": None}, {"slug": ""}]})
    for p in cur:
        slug = unique_product_slug(db, p.get("name"), exclude_id=p["_internal_id"])
        db.products.update_one(
            {"_internal_id": p["_internal_id"]},
            {"$set": {"slug": slug, "updated_at": now_dt()}},
        )
        log.info("slug %s -> %s", p.get("name"), slug)
        updated += 1
    return updated


def list_products(db, category_id=None, brand_id=None, q=None, member_exclusive=None, limit=50):
    query = {"is_active": True}
    if category_id:
        query["category_id"] = category_id
    if brand_id:
        query["brand_id"] = brand_id
    if member_exclusive is not None:
        query["is_member_exclusive"] = bool(member_exclusive)
    if q:
        pattern = re.escape(str(q).strip())
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
            {"tags": {"$regex": pattern, "$options": "i"}},
        ]
    limit = max(1, min(int(limit), 200))
    return list(db.products.find(query).sort("created_at", DESCENDING).limit(limit))


def get_product(db, id_or_slug):
    product = db.products.find_one({"_internal_id": id_or_slug}) or db.products.find_one({"slug": id_or_slug})
    if not product:
        raise NotFound("product_not_found", "Product not found")
    return product


def mark_member_products(db, product_ids, exclusive=True):
    res = db.products.update_many(
        {"_internal_id": {"$in": list(product_ids)}},
        {"$set": {"is_member_exclusive": bool(exclusive), "updated_at": now_dt()}},
    )
    return res.modified_count


def list_categories(db):
    return list(db.categories.find({"is_active": {"$ne": False}}).sort("name", ASCENDING))


def list_brands(db):
    return list(db.brands.find({"is_active": {"$ne": False}}).sort("name", ASCENDING))

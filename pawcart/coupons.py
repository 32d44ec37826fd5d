# coupons.py - coupon lookup, validation, atomic claim, demo seeds

import random
import string
from datetime import datetime, timedelta

from pymongo import ReturnDocument, errors as mongo_errors

from . import pricing, wallet
from .db import now_dt, new_id, start_of_day
from .errors import ShopError, NotFound, Conflict
from .logger import get_logger
from .settings import CURRENCY_SYMBOL, FREE_DELIVERY_REDEEM_COST, FREE_DELIVERY_VALID_DAYS

log = get_logger("coupons")

DEMO_COUPON_VALID_DAYS = 365


def _parse_dt(value):
    if isinstance(value, datetime) or value is None:
        return value
    # accept "2025-01-01", "2025-01-01T00:00:00Z", "...+00:00"
    text = str(value).strip().replace("Z", "+00:00")
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        raise ShopError("bad_date", f"Invalid date: {value}")
    if dt.tzinfo is not None:
        dt = dt.replace(tzinfo=None) - (dt.utcoffset() or timedelta(0))
    return dt


def find_usable_coupon(db, code, order_amount, at=None):
    """Return the coupon doc for `code` if it can be applied to `order_amount` right now."""
    if not code or not str(code).strip():
        raise ShopError("coupon_code_required", "Coupon code is required")
    at = at or now_dt()
    coupon = db.coupons.find_one({"code": str(code).strip().upper(), "is_active": True})
    if not coupon:
        raise NotFound("invalid_coupon", "Invalid coupon code")

    if at < coupon["valid_from"] or at > coupon["valid_until"]:
        raise ShopError("coupon_not_valid_now", "Coupon has expired or is not yet valid")

    limit = coupon.get("usage_limit")
    if limit and int(coupon.get("used_count", 0)) >= int(limit):
        raise ShopError("coupon_usage_limit", "Coupon usage limit reached")

    minimum = coupon.get("min_order_amount")
    if minimum and float(order_amount) < float(minimum):
        raise ShopError(
            "coupon_min_order",
            f"Minimum order amount of {CURRENCY_SYMBOL}{float(minimum):.2f} required",
            min_order_amount=float(minimum),
        )
    return coupon


def validate_coupon(db, code, order_amount):
    coupon = find_usable_coupon(db, code, order_amount)
    return {
        "code": coupon["code"],
        "discount_type": coupon["discount_type"],
        "discount_value": coupon["discount_value"],
        "discount_amount": pricing.coupon_discount(coupon, float(order_amount)),
    }


def claim_coupon(db, coupon):
    """Count one use. The filter re-checks the limit so two racing checkouts can't both take the last use."""
    q = {"_internal_id": coupon["_internal_id"]}
    limit = coupon.get("usage_limit")
    if limit:
        q["used_count"] = {"$lt": int(limit)}
    updated = db.coupons.find_one_and_update(
        q, {"$inc": {"used_count": 1}}, return_document=ReturnDocument.AFTER
    )
    if not updated:
        raise ShopError("coupon_usage_limit", "Coupon usage limit reached")
    log.info("coupon %s used, count now %s", updated["code"], updated["used_count"])
    return updated


def release_coupon(db, code):
    db.coupons.update_one({"code": code, "used_count": {"$gt": 0}}, {"$inc": {"used_count": -1}})


def create_coupon(db, data):
    code = str(data.get("code") or "").strip().upper()
    if not code:
        raise ShopError("bad_coupon", "Coupon code is required")
    kind = data.get("discount_type")
    if kind not in pricing.COUPON_TYPES:
        raise ShopError("bad_coupon", f"discount_type must be one of {', '.join(pricing.COUPON_TYPES)}")
    try:
        value = float(data.get("discount_value") or 0)
    except (TypeError, ValueError):
        raise ShopError("bad_coupon", "discount_value must be a number")
    if value <= 0:
        raise ShopError("bad_coupon", "discount_value must be positive")

    valid_from = _parse_dt(data.get("valid_from")) or now_dt()
    valid_until = _parse_dt(data.get("valid_until"))
    if not valid_until:
        raise ShopError("bad_coupon", "valid_until is required")
    if valid_until <= valid_from:
        raise ShopError("bad_coupon", "Valid until date must be after valid from date")

    usage_limit = data.get("usage_limit")
    if usage_limit is not None and int(usage_limit) < 1:
        raise ShopError("bad_coupon", "usage_limit must be at least 1")

    doc = {
        "_internal_id": new_id(),
        "code": code,
        "description": data.get("description"),
        "discount_type": kind,
        "discount_value": value,
        "min_order_amount": float(data["min_order_amount"]) if data.get("min_order_amount") is not None else None,
        "max_discount_amount": float(data["max_discount_amount"]) if data.get("max_discount_amount") is not None else None,
        "usage_limit": int(usage_limit) if usage_limit is not None else None,
        "used_count": 0,
        "valid_from": valid_from,
        "valid_until": valid_until,
        "is_active": data.get("is_active", True) is not False,
        "created_at": now_dt(),
    }
    if db.coupons.find_one({"code": code}):
        raise Conflict("coupon_exists", "Coupon code already exists")
    try:
        db.coupons.insert_one(doc)
    except mongo_errors.DuplicateKeyError:
        raise Conflict("coupon_exists", "Coupon code already exists")
    return doc


# --------- DEMO SEEDS ----------
def _demo_coupons_payload():
    # usable for a year from the day they are seeded
    start = start_of_day()
    until = start + timedelta(days=DEMO_COUPON_VALID_DAYS)
    return [
        {"code": "WELCOME10", "description": "Welcome bonus - 10% off for new customers",
         "discount_type": "percentage", "discount_value": 10, "min_order_amount": 100,
         "max_discount_amount": 50, "usage_limit": 1000, "valid_from": start, "valid_until": until},
        {"code": "REFERRAL20", "description": "Referral reward - 20 off",
         "discount_type": "fixed", "discount_value": 20, "min_order_amount": 150,
         "usage_limit": 500, "valid_from": start, "valid_until": until},
        {"code": "REWARD50", "description": "Points redemption - 50 off",
         "discount_type": "fixed", "discount_value": 50, "min_order_amount": 300,
         "usage_limit": 200, "valid_from": start, "valid_until": until},
        {"code": "SUMMER15", "description": "Summer sale - 15% off",
         "discount_type": "percentage", "discount_value": 15, "min_order_amount": 200,
         "max_discount_amount": 100, "usage_limit": 500,
         "valid_from": datetime(2024, 6, 1), "valid_until": datetime(2024, 8, 31), "is_active": False},
        {"code": "NEWSLETTER5", "description": "Newsletter subscription bonus - 5 off",
         "discount_type": "fixed", "discount_value": 5, "min_order_amount": 50,
         "usage_limit": 1000, "valid_from": start, "valid_until": until},
        {"code": "FREEDEL1234", "description": "Free delivery voucher",
         "discount_type": "free_delivery", "discount_value": 10, "min_order_amount": 0,
         "usage_limit": 1, "valid_from": start, "valid_until": until},
        {"code": "FREEDEL9876", "description": "Free delivery voucher",
         "discount_type": "free_delivery", "discount_value": 10, "min_order_amount": 0,
         "usage_limit": 1, "valid_from": start, "valid_until": until},
    ]


def seed_demo_coupons(db):
    """Insert demo coupons that don't exist yet. Existing codes are left as they are."""
    created, skipped = 0, 0
    for data in _demo_coupons_payload():
        if db.coupons.find_one({"code": data["code"]}):
            skipped += 1
            continue
        create_coupon(db, data)
        created += 1
    log.info("demo coupons: %d created, %d skipped", created, skipped)
    return created, skipped


def _free_delivery_code(db):
    for _ in range(20):
        code = "FREEDEL" + "".join(random.choices(string.digits, k=4))
        if not db.coupons.find_one({"code": code}):
            return code
    return "FREEDEL" + new_id()[:8].upper()


def redeem_free_delivery(db, user_id, cost=FREE_DELIVERY_REDEEM_COST):
    """Trade wallet balance for a single-use free delivery coupon."""
    if not user_id:
        raise ShopError("user_id_required", "User ID is required")
    w = wallet.get_or_create_wallet(db, user_id)
    code = _free_delivery_code(db)
    wallet.add_transaction(
        db, w, wallet.SPEND, "REDEEM_FREE_DELIVERY", cost,
        description="Points redemption - free delivery", metadata={"coupon_code": code},
    )
    start = now_dt() - timedelta(minutes=1)
    return create_coupon(db, {
        "code": code,
        "description": "Points Redemption - Free Delivery",
        "discount_type": pricing.FREE_DELIVERY,
        "discount_value": cost,
        "min_order_amount": 0,
        "usage_limit": 1,
        "valid_from": start,
        "valid_until": start + timedelta(days=FREE_DELIVERY_VALID_DAYS),
    })

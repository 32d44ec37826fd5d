# db.py - Mongo connection, indexes and document helpers

import uuid
from datetime import datetime, timedelta

from pymongo import MongoClient, ASCENDING, DESCENDING

from .logger import get_logger
from .settings import MONGO_URI, DB_NAME

log = get_logger("db")

mongo_client = MongoClient(MONGO_URI, serverSelectionTimeoutMS=5000)


def get_db():
    mongo_client.admin.command("ping")
    return mongo_client[DB_NAME]


# -------------------------------------------------
# HELPERS
# -------------------------------------------------
def now_dt():
    return datetime.utcnow()


def now_iso():
    return now_dt().isoformat() + "Z"


def start_of_day(at=None):
    at = at or now_dt()
    return at.replace(hour=0, minute=0, second=0, microsecond=0)


def day_bounds(at=None, offset_days=0):
    start = start_of_day(at) + timedelta(days=offset_days)
    return start, start + timedelta(days=1)


def new_id():
    return str(uuid.uuid4())


def _plain(value):
    if isinstance(value, datetime):
        return value.isoformat() + "Z"
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items() if k != "_id"}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def safe_doc(doc):
    """Mongo doc -> JSON-safe dict; `_internal_id` is exposed as `id`."""
    if not doc:
        return None
    out = _plain(dict(doc))
    if "_internal_id" in out:
        out["id"] = out.pop("_internal_id")
    # never leak credentials
    out.pop("password", None)
    return out


def log_audit(db, entity, entity_id, action, payload, by="system"):
    try:
        db.audit_logs.insert_one({
            "entity": entity,
            "entity_id": str(entity_id),
            "action": action,
            "payload": payload,
            "by": by,
            "ts": now_dt()
        })
    except Exception as e:
        # don't kill the request just because audit failed
        log.warning("audit log failed: %s", e)


def ensure_indexes(db):
    db.users.create_index([("_internal_id", ASCENDING)], unique=True)
    db.users.create_index([("username", ASCENDING)], unique=True)
    db.users.create_index([("email", ASCENDING)], unique=True, sparse=True)
    db.users.create_index([("membership.expiry_date", ASCENDING)])

    db.products.create_index([("_internal_id", ASCENDING)], unique=True)
    db.products.create_index([("slug", ASCENDING)], unique=True, sparse=True)
    db.products.create_index([("category_id", ASCENDING), ("is_active", ASCENDING)])
    db.products.create_index([("brand_id", ASCENDING)])
    db.products.create_index([("tags", ASCENDING)])
    db.categories.create_index([("slug", ASCENDING)], unique=True)
    db.brands.create_index([("slug", ASCENDING)], unique=True)

    db.carts.create_index([("user_id", ASCENDING)], unique=True)

    db.orders.create_index([("_internal_id", ASCENDING)], unique=True)
    db.orders.create_index([("order_id", ASCENDING)], unique=True)
    db.orders.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    db.orders.create_index([("customer_info.email", ASCENDING)])
    db.orders.create_index([("status", ASCENDING), ("created_at", DESCENDING)])
    db.orders.create_index([("items.product_id", ASCENDING)])

    db.invoices.create_index([("_internal_id", ASCENDING)], unique=True)
    db.invoices.create_index([("invoice_number", ASCENDING)], unique=True)
    db.invoices.create_index([("order_id", ASCENDING)])
    db.invoices.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])

    db.coupons.create_index([("code", ASCENDING)], unique=True)

    db.wallets.create_index([("user_id", ASCENDING)], unique=True)
    db.wallet_transactions.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    db.game_records.create_index([("user_id", ASCENDING), ("played_at", DESCENDING)])
    db.game_records.create_index([("game_type", ASCENDING)])
    db.daily_checkins.create_index([("user_id", ASCENDING), ("check_in_date", DESCENDING)])
    db.user_tasks.create_index([("user_id", ASCENDING), ("task_type", ASCENDING)])

    db.user_behaviors.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    db.user_behaviors.create_index([("session_id", ASCENDING), ("created_at", DESCENDING)])
    db.user_behaviors.create_index([("product_id", ASCENDING)])
    db.recommendation_cache.create_index([("key", ASCENDING), ("kind", ASCENDING)])
    db.recommendation_cache.create_index([("expires_at", ASCENDING)], expireAfterSeconds=0)
    db.pets.create_index([("user_id", ASCENDING)])

    db.audit_logs.create_index([("entity", ASCENDING), ("ts", DESCENDING)])
    db.notifications.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])

"""Shared fixtures: an in-memory Mongo (mongomock) and a Flask test client bound to it."""

import os
from datetime import datetime, timedelta

# must be set before pawcart.app is imported anywhere
os.environ["ENSURE_INDEXES_ON_START"] = "false"

import mongomock
import pytest

from pawcart.db import new_id

# Fixed clock for tests that pass `at=` explicitly; whole seconds so Mongo's
# millisecond datetime precision doesn't matter.
NOW = datetime(2025, 3, 10, 12, 0, 0)


@pytest.fixture
def db():
    return mongomock.MongoClient().pawcart_test


@pytest.fixture
def client(db, monkeypatch):
    import pawcart.app as api

    monkeypatch.setattr(api, "get_db", lambda: db)
    api.app.config["TESTING"] = True
    return api.app.test_client()


def make_user(db, username="alice", email=None, tier=None, expires_in_days=30, at=None,
              auto_renew=False, total_saved=0.0):
    at = at or datetime.utcnow().replace(microsecond=0)
    user = {
        "_internal_id": new_id(),
        "username": username,
        "email": email or f"{username}@example.com",
    }
    if tier:
        user["membership"] = {
            "tier": tier,
            "start_date": at - timedelta(days=1),
            "expiry_date": at + timedelta(days=expires_in_days),
            "auto_renew": auto_renew,
            "statistics": {"total_saved": total_saved, "exclusive_products_purchased": 0},
        }
    db.users.insert_one(user)
    return user


def make_product(db, name="Salmon Cat Food", price=50.0, stock=10, **extra):
    product = {
        "_internal_id": new_id(),
        "name": name,
        "price": price,
        "stock_quantity": stock,
        "is_active": True,
        "created_at": datetime.utcnow(),
    }
    product.update(extra)
    db.products.insert_one(product)
    return product


def make_coupon(db, code="SAVE10", discount_type="percentage", value=10, **extra):
    from pawcart import coupons

    data = {
        "code": code,
        "discount_type": discount_type,
        "discount_value": value,
        "valid_from": datetime.utcnow() - timedelta(days=1),
        "valid_until": datetime.utcnow() + timedelta(days=30),
    }
    data.update(extra)
    return coupons.create_coupon(db, data)


def customer(email="guest@example.com"):
    return {"name": "Pat Lee", "phone": "+85291234567", "email": email}

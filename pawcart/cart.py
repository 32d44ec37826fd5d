# cart.py - one cart document per user

from . import pricing
from .catalog import get_product
from .db import now_dt, new_id
from .errors import ShopError, NotFound


def _empty(user_id):
    return {"_internal_id": new_id(), "user_id": user_id, "items": [], "total": 0.0}


def _save(db, cart):
    cart["total"] = pricing.line_subtotal(cart["items"])
    cart["updated_at"] = now_dt()
    fields = {k: v for k, v in cart.items() if k != "_id"}
    db.carts.update_one({"user_id": cart["user_id"]}, {"$set": fields}, upsert=True)
    return cart


def parse_quantity(value, default=None):
    """Quantity from a request body. Only a missing value falls back to `default`."""
    if value is None:
        if default is None:
            raise ShopError("bad_quantity", "Quantity is required")
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ShopError("bad_quantity", "Quantity must be a number")


def get_cart(db, user_id):
    if not user_id:
        raise ShopError("user_id_required", "User ID is required")
    return db.carts.find_one({"user_id": user_id}) or _empty(user_id)


def add_item(db, user_id, product_id, quantity=1):
    quantity = parse_quantity(quantity, 1)
    if quantity < 1:
        raise ShopError("bad_quantity", "Quantity must be at least 1")
    product = get_product(db, product_id)
    cart = get_cart(db, user_id)
    for it in cart["items"]:
        if it["product_id"] == product["_internal_id"]:
            it["quantity"] += quantity
            break
    else:
        cart["items"].append({
            "product_id": product["_internal_id"],
            "name": product.get("name"),
            "price": float(product.get("price") or 0),
            "quantity": quantity,
            "image": (product.get("images") or [None])[0],
        })
    return _save(db, cart)


def update_item(db, user_id, product_id, quantity):
    cart = get_cart(db, user_id)
    quantity = parse_quantity(quantity)
    found = False
    items = []
    for it in cart["items"]:
        if it["product_id"] == product_id:
            found = True
            if quantity <= 0:
                continue
            it["quantity"] = quantity
        items.append(it)
    if not found:
        raise NotFound("item_not_in_cart", "Item not found in cart")
    cart["items"] = items
    return _save(db, cart)


def clear_cart(db, user_id):
    db.carts.update_one(
        {"user_id": user_id},
        {"$set": {"items": [], "total": 0.0, "updated_at": now_dt()}},
    )

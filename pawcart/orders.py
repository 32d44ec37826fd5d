# orders.py - checkout, orders/invoices, status changes, membership discount reconciliation

import random
import string
from datetime import datetime

from pymongo import DESCENDING
from pymongo import errors as mongo_errors

from . import coupons, membership, pricing, wallet
from .cart import clear_cart, parse_quantity
from .db import now_dt, new_id, log_audit
from .errors import ShopError, NotFound, Forbidden
from .logger import get_logger
from .recommendations import RecommendationService

log = get_logger("orders")

ORDER_STATUSES = ["Pending", "Processing", "Shipped", "Delivered", "Cancelled", "Refunded"]
REVERSING_STATUSES = ("Cancelled", "Refunded")
COD_METHODS = ("cod", "cash", "cash-on-delivery")
_B36 = string.digits + string.ascii_lowercase


def make_order_public_id():
    ts = datetime.utcnow().strftime("%Y%m%d")
    return f"PC-{ts}-{new_id()[:6].upper()}"


def make_invoice_number():
    ms = int(datetime.utcnow().timestamp() * 1000)
    return f"INV-{ms}-{''.join(random.choices(_B36, k=9)).upper()}"


def _require_customer(info):
    info = info or {}
    missing = [k for k in ("name", "phone", "email") if not str(info.get(k) or "").strip()]
    if missing:
        raise ShopError("customer_info_required", "Customer name, phone and email are required",
                        missing=missing)
    out = dict(info)
    out["email"] = str(info["email"]).strip().lower()
    return out


def _load_lines(db, raw_items):
    """Client items -> priced lines. Prices always come from the products collection."""
    if not raw_items:
        raise ShopError("empty_order", "Order must contain at least one item")
    lines = []
    for it in raw_items:
        pid = it.get("product_id") or it.get("id")
        qty = parse_quantity(it.get("quantity"), 1)
        if qty < 1:
            raise ShopError("bad_quantity", "Quantity must be at least 1")
        product = db.products.find_one({"_internal_id": pid}) if pid else None
        if not product:
            raise NotFound("product_not_found", f"Product {pid} not found", product_id=pid)
        if product.get("is_active") is False:
            raise ShopError("product_unavailable", f"{product.get('name')} is no longer available",
                            product_id=pid)
        stock = product.get("stock_quantity")
        if stock is not None and int(stock) < qty:
            raise ShopError("insufficient_stock", f"Only {stock} of {product.get('name')} left",
                            product_id=pid, available=int(stock))
        lines.append({
            "product_id": product["_internal_id"],
            "name": product.get("name"),
            "price": float(product.get("price") or 0),
            "quantity": qty,
            "is_member_exclusive": bool(product.get("is_member_exclusive")),
            "category_id": product.get("category_id"),
        })
    return lines


def _price_basket(db, payload, at=None):
    lines = _load_lines(db, payload.get("items"))
    email = (payload.get("customer_info") or {}).get("email")
    user, tier = membership.resolve_member(db, payload.get("user_id"), email, at)

    if tier is None and any(l["is_member_exclusive"] for l in lines):
        raise Forbidden("members_only_product", "Member exclusive products require an active membership")

    subtotal = pricing.line_subtotal(lines)
    coupon = None
    if payload.get("coupon_code"):
        coupon = coupons.find_usable_coupon(db, payload["coupon_code"], subtotal, at)

    # wallet only for the signed-in account, never a guest matched by email
    w = None
    try:
        requested = float(payload.get("wallet_amount") or 0)
    except (TypeError, ValueError):
        raise ShopError("bad_request", "wallet_amount must be a number")
    if requested > 0 and user and user["_internal_id"] == payload.get("user_id"):
        w = wallet.get_or_create_wallet(db, user["_internal_id"])

    q = pricing.quote(
        lines, coupon=coupon, tier=tier,
        wallet_balance=float(w["balance"]) if w else 0.0,
        wallet_requested=requested if w else 0.0,
    )
    return lines, coupon, user, w, q


def quote_checkout(db, payload):
    _, _, _, _, q = _price_basket(db, payload or {})
    return q


def _restock(db, lines):
    for l in lines:
        db.products.update_one({"_internal_id": l["product_id"], "stock_quantity": {"$ne": None}},
                               {"$inc": {"stock_quantity": l["quantity"]}})


def _take_stock(db, lines):
    taken = []
    for l in lines:
        res = db.products.update_one(
            {"_internal_id": l["product_id"], "$or": [
                {"stock_quantity": {"$gte": l["quantity"]}},
                {"stock_quantity": None},
            ]},
            {"$inc": {"stock_quantity": -l["quantity"]}},
        )
        if not res.modified_count:
            _restock(db, taken)
            raise ShopError("insufficient_stock", f"{l['name']} sold out while checking out",
                            product_id=l["product_id"])
        taken.append(l)


def _undo_checkout(db, order_internal_id, lines, coupon, w, wallet_spent):
    db.orders.delete_one({"_internal_id": order_internal_id})
    if wallet_spent > 0:
        wallet.add_transaction(db, w, wallet.REFUND, "ORDER_ROLLBACK", wallet_spent,
                               description="Order could not be saved",
                               metadata={"order_id": order_internal_id})
    _restock(db, lines)
    if coupon:
        coupons.release_coupon(db, coupon["code"])


def place_order(db, payload):
    payload = payload or {}
    customer = _require_customer(payload.get("customer_info"))
    payload = dict(payload, customer_info=customer)
    at = now_dt()
    lines, coupon, user, w, q = _price_basket(db, payload, at)

    # writes: coupon -> stock -> wallet; each step undoes the earlier ones on failure
    if coupon:
        coupons.claim_coupon(db, coupon)
    try:
        _take_stock(db, lines)
    except ShopError:
        if coupon:
            coupons.release_coupon(db, coupon["code"])
        raise

    order_internal_id = new_id()
    if q.wallet_applied > 0:
        try:
            wallet.add_transaction(db, w, wallet.SPEND, "ORDER_PAYMENT", q.wallet_applied,
                                   description="Order payment", metadata={"order_id": order_internal_id})
        except ShopError:
            _restock(db, lines)
            if coupon:
                coupons.release_coupon(db, coupon["code"])
            raise

    method = str(payload.get("payment_method") or "cod").lower()
    payment_status = "Pending" if method in COD_METHODS else "Paid"
    order = {
        "_internal_id": order_internal_id,
        "order_id": make_order_public_id(),
        "user_id": payload.get("user_id"),
        "customer_info": customer,
        "shipping_address": payload.get("shipping_address") or {},
        "items": [{k: l[k] for k in ("product_id", "name", "price", "quantity", "is_member_exclusive")}
                  for l in lines],
        "subtotal": q.subtotal,
        "discount": q.coupon_discount,
        "discount_code": q.coupon_code,
        "free_delivery_code": q.coupon_code if q.free_delivery else None,
        "membership_tier": q.membership_tier,
        "membership_discount": q.membership_discount,
        "member_exclusive_items_count": q.member_exclusive_items,
        "shipping_fee": q.shipping_fee,
        "wallet_applied": q.wallet_applied,
        "total": q.total,
        "payment_method": method,
        "payment_status": payment_status,
        "status": "Pending",
        "notes": payload.get("notes"),
        "created_at": at,
    }
    invoice = {
        "_internal_id": new_id(),
        "invoice_number": make_invoice_number(),
        "order_id": order_internal_id,
        "user_id": order["user_id"],
        "customer_info": customer,
        "items": order["items"],
        "subtotal": q.subtotal,
        "discount": q.coupon_discount,
        "discount_code": q.coupon_code,
        "membership_tier": q.membership_tier,
        "membership_discount": q.membership_discount,
        "shipping_fee": q.shipping_fee,
        "wallet_applied": q.wallet_applied,
        "total": q.total,
        "payment_method": method,
        "payment_status": payment_status,
        "created_at": at,
    }
    order["invoice_number"] = invoice["invoice_number"]
    order["invoice_id"] = invoice["_internal_id"]
    try:
        db.orders.insert_one(order)
        db.invoices.insert_one(invoice)
    except mongo_errors.PyMongoError:
        log.exception("saving order %s failed, rolling back", order["order_id"])
        _undo_checkout(db, order_internal_id, lines, coupon, w, q.wallet_applied)
        raise

    if user and q.membership_tier:
        db.users.update_one({"_internal_id": user["_internal_id"]}, {"$inc": {
            "membership.statistics.total_saved": q.membership_discount,
            "membership.statistics.exclusive_products_purchased": q.member_exclusive_items,
        }})
    if payload.get("user_id"):
        clear_cart(db, payload["user_id"])

    log_audit(db, "orders", order_internal_id, "create", {
        "order_id": order["order_id"], "total": q.total, "membership_tier": q.membership_tier,
    }, by=payload.get("user_id") or "guest")

    recs = RecommendationService(db)
    for l in lines:
        recs.track_behavior(payload.get("user_id"), payload.get("session_id"), l["product_id"], "purchase",
                            {"order_id": order_internal_id, "quantity": l["quantity"]})

    log.info("order %s placed: total %.2f (coupon %.2f, member %.2f, wallet %.2f)",
             order["order_id"], q.total, q.coupon_discount, q.membership_discount, q.wallet_applied)
    return order, invoice


# -------------------------------------------------
# LOOKUPS
# -------------------------------------------------
def get_order(db, ident):
    o = db.orders.find_one({"_internal_id": ident}) or db.orders.find_one({"order_id": ident})
    if not o:
        raise NotFound("order_not_found", "Order not found")
    return o


def _backfill_from_invoice(db, order):
    if order.get("invoice_number") and order.get("customer_info"):
        return order
    inv = db.invoices.find_one({"order_id": order["_internal_id"]})
    if inv:
        if not order.get("invoice_number"):
            order["invoice_number"] = inv.get("invoice_number")
        if not order.get("customer_info"):
            order["customer_info"] = inv.get("customer_info")
    return order


def list_orders(db, user_id=None, status=None, limit=100):
    q = {}
    if user_id:
        q["user_id"] = user_id
    if status:
        q["status"] = normalize_status(status)
    limit = max(1, min(int(limit), 500))
    return [_backfill_from_invoice(db, o) for o in db.orders.find(q).sort("created_at", DESCENDING).limit(limit)]


def get_invoice(db, ident):
    inv = (
        db.invoices.find_one({"_internal_id": ident})
        or db.invoices.find_one({"invoice_number": ident})
        or db.invoices.find_one({"order_id": ident})
    )
    if not inv:
        raise NotFound("invoice_not_found", "Invoice not found")
    return inv


def list_invoices(db, user_id):
    return list(db.invoices.find({"user_id": user_id}).sort("created_at", DESCENDING))


# -------------------------------------------------
# STATUS
# -------------------------------------------------
def normalize_status(status):
    value = str(status or "").strip().capitalize()
    if value not in ORDER_STATUSES:
        raise ShopError("invalid_status", f"Status must be one of {', '.join(ORDER_STATUSES)}")
    return value


def update_order_status(db, ident, status, by="admin"):
    new_status = normalize_status(status)
    order = get_order(db, ident)
    oid = order["_internal_id"]
    update_set = {"status": new_status, "updated_at": now_dt()}
    if new_status == "Delivered":
        update_set["delivered_at"] = now_dt()
    if new_status == "Refunded":
        update_set["payment_status"] = "Refunded"
    db.orders.update_one({"_internal_id": oid}, {"$set": update_set})

    if new_status in REVERSING_STATUSES:
        # flags flip once, so a repeated cancel/refund can't restock or refund twice
        if db.orders.update_one({"_internal_id": oid, "stock_restored": {"$ne": True}},
                                {"$set": {"stock_restored": True}}).modified_count:
            _restock(db, order.get("items") or [])
        spent = float(order.get("wallet_applied") or 0)
        if spent > 0 and order.get("user_id") and db.orders.update_one(
                {"_internal_id": oid, "wallet_refunded": {"$ne": True}},
                {"$set": {"wallet_refunded": True}}).modified_count:
            w = wallet.get_or_create_wallet(db, order["user_id"])
            wallet.add_transaction(db, w, wallet.REFUND, "ORDER_REFUND", spent,
                                   description=f"Refund for order {order['order_id']}",
                                   metadata={"order_id": oid})
    if "payment_status" in update_set:
        db.invoices.update_one({"order_id": oid}, {"$set": {"payment_status": update_set["payment_status"]}})

    log_audit(db, "orders", oid, "status_change", {"from": order.get("status"), "status": new_status}, by=by)
    return db.orders.find_one({"_internal_id": oid})


# -------------------------------------------------
# MEMBERSHIP DISCOUNT RECONCILIATION
# -------------------------------------------------
def orders_missing_membership_discount(db, user, guest_ids=()):
    q = membership.user_order_filter(user, guest_ids)
    q = {"$and": [q, {"$or": [
        {"membership_discount": {"$exists": False}},
        {"membership_discount": 0},
        {"membership_discount": None},
    ]}, {"reconciled_at": {"$exists": False}}]}
    return list(db.orders.find(q).sort("created_at", DESCENDING))


def reconcile_order(db, order, tier, dry_run=False, by="maintenance"):
    q = pricing.recompute_order(order, tier)
    change = {
        "order_id": order.get("order_id") or order["_internal_id"],
        "created_at": order.get("created_at"),
        "subtotal": q.subtotal,
        "coupon_discount": q.coupon_discount,
        "shipping_fee": q.shipping_fee,
        "old_total": pricing.money(order.get("total") or 0),
        "new_total": q.total,
        "saved": q.membership_discount,
        "invoice_updated": False,
    }
    if dry_run:
        return change

    fields = {"membership_discount": q.membership_discount, "membership_tier": tier, "total": q.total}
    db.orders.update_one({"_internal_id": order["_internal_id"]},
                         {"$set": dict(fields, reconciled_at=now_dt())})
    res = db.invoices.update_one({"order_id": order["_internal_id"]}, {"$set": fields})
    change["invoice_updated"] = bool(res.matched_count)
    if not res.matched_count:
        log.warning("no invoice for order %s", change["order_id"])
    log_audit(db, "orders", order["_internal_id"], "reconcile_membership_discount", {
        "tier": tier, "old_total": change["old_total"], "new_total": q.total,
        "membership_discount": q.membership_discount,
    }, by=by)
    return change


def reconcile_member_orders(db, ident, guest_ids=(), dry_run=False, at=None):
    """Back-fill the membership discount on a member's orders placed without it."""
    user = membership.find_user(db, ident)
    if not user:
        raise NotFound("user_not_found", f"User not found: {ident}")
    tier = pricing.active_tier(user, at)
    if not tier:
        raise ShopError("membership_inactive", "User has no active membership")

    changes = [reconcile_order(db, o, tier, dry_run=dry_run)
               for o in orders_missing_membership_discount(db, user, guest_ids)]
    total = pricing.money(sum(c["saved"] for c in changes))
    if changes and not dry_run:
        membership.membership_statistics(db, user["_internal_id"], refresh=True)
    return {
        "user_id": user["_internal_id"],
        "username": user.get("username"),
        "tier": tier,
        "rate": pricing.membership_rate(tier),
        "dry_run": dry_run,
        "orders_fixed": len(changes),
        "total_savings": total,
        "average_savings": pricing.money(total / len(changes)) if changes else 0.0,
        "changes": changes,
    }


def verify_member_discounts(db, at=None):
    at = at or now_dt()
    out = []
    for user in db.users.find({"membership.expiry_date": {"$gte": at}}):
        q = membership.user_order_filter(user)
        q["status"] = {"$nin": membership.EXCLUDED_ORDER_STATUSES}
        from_orders = 0.0
        missing = 0
        count = 0
        for o in db.orders.find(q, {"membership_discount": 1}):
            count += 1
            saved = float(o.get("membership_discount") or 0)
            if saved > 0:
                from_orders += saved
            else:
                missing += 1
        from_orders = pricing.money(from_orders)
        stored = pricing.money(((user.get("membership") or {}).get("statistics") or {}).get("total_saved") or 0)
        out.append({
            "user_id": user["_internal_id"],
            "username": user.get("username"),
            "email": user.get("email"),
            "tier": user["membership"].get("tier"),
            "orders": count,
            "orders_without_discount": missing,
            "saved_from_orders": from_orders,
            "stored_total_saved": stored,
            "mismatch": abs(from_orders - stored) > 0.01,
        })
    return out

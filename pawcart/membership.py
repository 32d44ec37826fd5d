# membership.py - tiers, purchase, statistics, expiry/renewal job

from datetime import timedelta

from pymongo import DESCENDING

from . import pricing, wallet
from .db import now_dt, new_id, day_bounds
from .errors import ShopError, NotFound
from .logger import get_logger
from .settings import (
    TIERS, MEMBERSHIP_PERIOD_DAYS, MEMBERSHIP_RENEWAL_DAYS, MEMBERSHIP_EXPIRY_NOTICE_DAYS,
)

log = get_logger("membership")

WALLET_PAYMENT = "my-wallet"
EXCLUDED_ORDER_STATUSES = ["Cancelled", "Refunded"]


def find_user(db, ident):
    if not ident:
        return None
    return (
        db.users.find_one({"_internal_id": ident})
        or db.users.find_one({"email": ident})
        or db.users.find_one({"username": ident})
    )


def resolve_member(db, user_id=None, email=None, at=None):
    """
    The user whose membership prices an order, and their active tier.
    Signed-in checkout goes by user id; a guest checkout falls back to the
    account owning the customer email.
    """
    user = db.users.find_one({"_internal_id": user_id}) if user_id else None
    if not user and email:
        user = db.users.find_one({"email": str(email).strip().lower()})
    return user, pricing.active_tier(user, at)


def user_order_filter(user, extra_ids=()):
    ids = [i for i in (user.get("_internal_id"), user.get("username"), user.get("email")) if i]
    ids += [i for i in extra_ids if i]
    ors = [{"user_id": {"$in": ids}}]
    if user.get("email"):
        ors.append({"customer_info.email": user["email"]})
    return {"$or": ors}


def purchase_membership(db, user_id, tier, payment_method=None, months=1, at=None):
    if tier not in TIERS:
        raise ShopError("invalid_tier", "Invalid membership tier")
    try:
        months = int(months or 1)
    except (TypeError, ValueError):
        raise ShopError("bad_months", "months must be a whole number")
    if months < 1:
        raise ShopError("bad_months", "months must be at least 1")
    user = db.users.find_one({"_internal_id": user_id}) if user_id else None
    if not user:
        raise NotFound("user_not_found", "User not found")

    at = at or now_dt()
    price = pricing.money(TIERS[tier]["price"] * months)
    if payment_method != WALLET_PAYMENT:
        raise ShopError("payment_required", "Memberships can only be paid from the wallet",
                        payment_method=payment_method)
    w = wallet.get_or_create_wallet(db, user_id)
    if float(w.get("balance") or 0) < price:
        raise ShopError("insufficient_wallet_balance", "Insufficient wallet balance",
                        required=price, balance=pricing.money(w.get("balance") or 0))
    wallet.add_transaction(db, w, wallet.SPEND, "MEMBERSHIP_PURCHASE", price,
                           description=f"{tier} membership ({months} month(s))",
                           metadata={"tier": tier, "months": months})

    current = user.get("membership") or {}
    period = timedelta(days=MEMBERSHIP_PERIOD_DAYS * months)
    if current.get("tier") == tier and pricing.membership_is_active(current, at):
        start = current.get("start_date") or at
        expiry = current["expiry_date"] + period
    else:
        start = at
        expiry = at + period

    stats = dict(current.get("statistics") or {})
    stats.setdefault("total_saved", 0.0)
    stats.setdefault("exclusive_products_purchased", 0)
    stats["last_renew_date"] = at
    membership = {
        "tier": tier,
        "start_date": start,
        "expiry_date": expiry,
        "auto_renew": bool(current.get("auto_renew", False)),
        "statistics": stats,
    }
    db.users.update_one({"_internal_id": user_id}, {"$set": {"membership": membership, "updated_at": at}})
    db.memberships.insert_one({
        "_internal_id": new_id(),
        "user_id": user_id,
        "tier": tier,
        "months": months,
        "price": price,
        "payment_method": payment_method,
        "expiry_date": expiry,
        "created_at": at,
    })
    log.info("membership %s for %s until %s (paid %.2f via %s)", tier, user_id, expiry, price, payment_method)
    return membership


def membership_statistics(db, user_id, refresh=True):
    user = find_user(db, user_id)
    if not user:
        raise NotFound("user_not_found", "User not found")
    q = user_order_filter(user)
    q["status"] = {"$nin": EXCLUDED_ORDER_STATUSES}

    total_saved = 0.0
    exclusive = 0
    with_discount = 0
    orders = list(db.orders.find(q).sort("created_at", DESCENDING))
    for o in orders:
        saved = float(o.get("membership_discount") or 0)
        if saved > 0:
            with_discount += 1
            total_saved += saved
        exclusive += int(o.get("member_exclusive_items_count") or 0)
    total_saved = pricing.money(total_saved)

    membership = user.get("membership") or {}
    if refresh and membership:
        db.users.update_one({"_internal_id": user["_internal_id"]}, {"$set": {
            "membership.statistics.total_saved": total_saved,
            "membership.statistics.exclusive_products_purchased": exclusive,
        }})
    return {
        "tier": membership.get("tier"),
        "active": pricing.membership_is_active(membership),
        "expiry_date": membership.get("expiry_date"),
        "total_saved": total_saved,
        "exclusive_products_purchased": exclusive,
        "last_renew_date": (membership.get("statistics") or {}).get("last_renew_date"),
        "orders_count": len(orders),
        "orders_with_discount": with_discount,
        "orders_without_discount": len(orders) - with_discount,
    }


def expiring_memberships(db, days=MEMBERSHIP_EXPIRY_NOTICE_DAYS, at=None):
    start, end = day_bounds(at, days)
    return list(db.users.find({"membership.expiry_date": {"$gte": start, "$lt": end}}))


def process_auto_renewals(db, at=None):
    at = at or now_dt()
    start, _ = day_bounds(at)
    _, end = day_bounds(at, 1)
    renewed, failed = [], []
    for user in db.users.find({
        "membership.expiry_date": {"$gte": start, "$lt": end},
        "membership.auto_renew": True,
    }):
        new_expiry = user["membership"]["expiry_date"] + timedelta(days=MEMBERSHIP_RENEWAL_DAYS)
        res = db.users.update_one(
            {"_internal_id": user["_internal_id"]},
            {"$set": {
                "membership.expiry_date": new_expiry,
                "membership.statistics.last_renew_date": at,
            }},
        )
        if res.modified_count:
            renewed.append(user["_internal_id"])
            log.info("auto-renewed %s (%s) until %s", user.get("email"), user["membership"]["tier"], new_expiry)
        else:
            failed.append(user["_internal_id"])
            log.warning("auto-renew did not update %s", user["_internal_id"])
    return renewed, failed


def _notify(db, user, kind, payload, at):
    db.notifications.insert_one({
        "_internal_id": new_id(),
        "user_id": user["_internal_id"],
        "email": user.get("email"),
        "kind": kind,
        "payload": payload,
        "created_at": at,
    })


def run_membership_job(db, at=None):
    """Daily job: notice for memberships expiring soon, then auto-renewals."""
    at = at or now_dt()
    expiring = expiring_memberships(db, at=at)
    for user in expiring:
        days_left = max(0, (user["membership"]["expiry_date"] - at).days)
        _notify(db, user, "membership_expiring", {
            "tier": user["membership"]["tier"],
            "expiry_date": user["membership"]["expiry_date"],
            "days_left": days_left,
        }, at)

    renewed, failed = process_auto_renewals(db, at)
    for uid in renewed:
        user = db.users.find_one({"_internal_id": uid})
        _notify(db, user, "membership_renewed", {
            "tier": user["membership"]["tier"],
            "expiry_date": user["membership"]["expiry_date"],
        }, at)
    for uid in failed:
        user = db.users.find_one({"_internal_id": uid})
        _notify(db, user, "membership_renew_failed", {"tier": user["membership"]["tier"]}, at)

    summary = {"expiring_notified": len(expiring), "renewed": len(renewed), "renew_failed": len(failed)}
    log.info("membership job: %s", summary)
    return summary

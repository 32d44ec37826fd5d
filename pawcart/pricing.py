"""
Order pricing.

Every place that needs a price (checkout quote, order placement, coupon
validation, historical order reconciliation) goes through this module.

Order of operations:
    subtotal
    - coupon discount               (percentage w/ cap, fixed, or free delivery)
    = after-coupon amount           (floored at 0)
    - membership discount           (tier rate x after-coupon amount)
    + shipping fee                  (0 above threshold or with free delivery)
    = payable
    - wallet                        (capped to a tier-dependent share of payable)
    = total
"""
from dataclasses import dataclass, asdict
from decimal import Decimal, ROUND_HALF_UP, ROUND_DOWN
from typing import Optional

from .db import now_dt
from .settings import (
    TIERS, DEFAULT_WALLET_CAP, BASE_SHIPPING_FEE, FREE_SHIPPING_THRESHOLD,
)

PERCENTAGE = "percentage"
FIXED = "fixed"
FREE_DELIVERY = "free_delivery"
COUPON_TYPES = (PERCENTAGE, FIXED, FREE_DELIVERY)


def round_half_up(value, places=0) -> float:
    exp = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(exp, rounding=ROUND_HALF_UP))


def money(value) -> float:
    return round_half_up(value, 2)


def floor_cents(value) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_DOWN))


def line_subtotal(items) -> float:
    total = 0.0
    for it in items or []:
        total += float(it.get("price", 0)) * int(it.get("quantity", 1))
    return money(total)


def membership_rate(tier) -> float:
    return TIERS.get(tier, {}).get("rate", 0.0) if tier else 0.0


def membership_is_active(membership, at=None) -> bool:
    if not membership or not membership.get("tier"):
        return False
    expiry = membership.get("expiry_date")
    if expiry is None:
        return False
    return (at or now_dt()) <= expiry


def active_tier(user, at=None) -> Optional[str]:
    membership = (user or {}).get("membership")
    if membership_is_active(membership, at):
        return membership["tier"]
    return None


def wallet_cap(tier) -> float:
    return TIERS.get(tier, {}).get("wallet_cap", DEFAULT_WALLET_CAP) if tier else DEFAULT_WALLET_CAP


def coupon_discount(coupon, amount) -> float:
    """Discount a coupon gives on `amount` (never more than `amount`)."""
    if not coupon:
        return 0.0
    kind = coupon.get("discount_type")
    value = float(coupon.get("discount_value") or 0)
    if kind == PERCENTAGE:
        discount = round_half_up(amount * value / 100)
        cap = coupon.get("max_discount_amount")
        if cap:
            discount = min(discount, float(cap))
    elif kind == FIXED:
        discount = value
    else:
        return 0.0
    return money(max(0.0, min(discount, amount)))


def shipping_fee(subtotal, free_delivery=False) -> float:
    if free_delivery or subtotal >= FREE_SHIPPING_THRESHOLD:
        return 0.0
    return BASE_SHIPPING_FEE


@dataclass
class Quote:
    subtotal: float = 0.0
    coupon_code: Optional[str] = None
    coupon_type: Optional[str] = None
    coupon_discount: float = 0.0
    membership_tier: Optional[str] = None
    membership_rate: float = 0.0
    membership_discount: float = 0.0
    shipping_fee: float = 0.0
    free_delivery: bool = False
    wallet_applied: float = 0.0
    total: float = 0.0
    member_exclusive_items: int = 0

    @property
    def payable(self):
        return money(self.total + self.wallet_applied)

    @property
    def savings(self):
        return money(self.coupon_discount + self.membership_discount)

    def as_dict(self):
        out = asdict(self)
        out["payable"] = self.payable
        return out


def _assemble(q, wallet_balance=0.0, wallet_requested=0.0, wallet_fixed=None):
    after_coupon = max(0.0, q.subtotal - q.coupon_discount)
    q.membership_rate = membership_rate(q.membership_tier)
    q.membership_discount = money(after_coupon * q.membership_rate)
    payable = money(max(0.0, after_coupon - q.membership_discount + q.shipping_fee))

    if wallet_fixed is not None:
        q.wallet_applied = money(min(float(wallet_fixed), payable))
    elif wallet_requested > 0 and wallet_balance > 0:
        limit = payable * wallet_cap(q.membership_tier)
        q.wallet_applied = floor_cents(min(float(wallet_requested), float(wallet_balance), limit))
    else:
        q.wallet_applied = 0.0

    q.total = money(payable - q.wallet_applied)
    return q


def quote(items, coupon=None, tier=None, shipping=None, wallet_balance=0.0, wallet_requested=0.0) -> Quote:
    """
    Price a basket. `items` carry server-side prices; `coupon` is a coupon doc
    that already passed validation; `tier` is an *active* membership tier or None.
    `shipping` overrides the shipping rule when given.
    """
    q = Quote(membership_tier=tier)
    q.subtotal = line_subtotal(items)
    q.member_exclusive_items = sum(
        int(it.get("quantity", 1)) for it in items or [] if it.get("is_member_exclusive")
    )
    if coupon:
        q.coupon_code = coupon.get("code")
        q.coupon_type = coupon.get("discount_type")
        q.free_delivery = q.coupon_type == FREE_DELIVERY
        q.coupon_discount = coupon_discount(coupon, q.subtotal)
    q.shipping_fee = money(shipping) if shipping is not None else shipping_fee(q.subtotal, q.free_delivery)
    return _assemble(q, wallet_balance, wallet_requested)


def recompute_order(order, tier) -> Quote:
    """Re-price a stored order for `tier`, keeping its item prices, coupon, shipping and wallet spend."""
    items = order.get("items") or []
    q = Quote(membership_tier=tier)
    q.subtotal = line_subtotal(items)
    q.member_exclusive_items = int(order.get("member_exclusive_items_count") or 0)
    q.coupon_code = order.get("discount_code")
    q.coupon_discount = money(min(float(order.get("discount") or 0), q.subtotal))
    q.free_delivery = bool(order.get("free_delivery_code"))
    q.shipping_fee = money(order.get("shipping_fee") or 0)
    return _assemble(q, wallet_fixed=order.get("wallet_applied") or 0.0)

"""
Maintenance CLI for PawCart.

    pawcart-maint reconcile-orders <user> [--guest-id ID ...] [--dry-run]
    pawcart-maint verify-discounts
    pawcart-maint membership-stats <user>
    pawcart-maint membership-job
    pawcart-maint seed-coupons
    pawcart-maint create-coupon --code C --type percentage --value 10 --until 2026-12-31
    pawcart-maint migrate-slugs
    pawcart-maint mark-member-products <product_id> ...
    pawcart-maint ensure-indexes
"""
import argparse
import sys

from . import catalog, coupons, membership, orders
from .db import get_db, ensure_indexes
from .errors import ShopError
from .logger import get_logger
from .settings import CURRENCY_SYMBOL

log = get_logger("maintenance")

RULE = "-" * 72


def _money(value):
    return f"{CURRENCY_SYMBOL}{float(value or 0):.2f}"


def cmd_reconcile_orders(db, args):
    summary = orders.reconcile_member_orders(db, args.user, guest_ids=args.guest_id or (), dry_run=args.dry_run)
    print(f"Member: {summary['username']} ({summary['tier']}, {summary['rate'] * 100:.0f}%)")
    if not summary["changes"]:
        print("No orders need fixing.")
        return 0
    for i, c in enumerate(summary["changes"], 1):
        print(RULE)
        print(f"{i}/{summary['orders_fixed']} order {c['order_id']}")
        print(f"  subtotal {_money(c['subtotal'])}  coupon -{_money(c['coupon_discount'])}  "
              f"shipping +{_money(c['shipping_fee'])}")
        print(f"  total {_money(c['old_total'])} -> {_money(c['new_total'])}  (saved {_money(c['saved'])})")
        if not args.dry_run and not c["invoice_updated"]:
            print("  no invoice found for this order")
    print(RULE)
    verb = "Would fix" if args.dry_run else "Fixed"
    print(f"{verb} {summary['orders_fixed']} orders, total savings {_money(summary['total_savings'])}, "
          f"average {_money(summary['average_savings'])}")
    return 0


def cmd_verify_discounts(db, args):
    rows = orders.verify_member_discounts(db)
    if not rows:
        print("No active members.")
        return 0
    mismatches = 0
    for r in rows:
        flag = "MISMATCH" if r["mismatch"] else "ok"
        mismatches += r["mismatch"]
        print(f"{flag:9} {r['username'] or r['user_id']:24} {r['tier']:12} orders={r['orders']:<4} "
              f"no-discount={r['orders_without_discount']:<4} from-orders={_money(r['saved_from_orders'])} "
              f"stored={_money(r['stored_total_saved'])}")
    print(RULE)
    print(f"{len(rows)} members checked, {mismatches} mismatched")
    return 1 if mismatches else 0


def cmd_membership_stats(db, args):
    s = membership.membership_statistics(db, args.user, refresh=not args.no_refresh)
    print(f"Tier: {s['tier'] or 'None'} ({'active' if s['active'] else 'inactive'})")
    print(f"Orders: {s['orders_count']} ({s['orders_with_discount']} with membership discount)")
    print(f"Total saved: {_money(s['total_saved'])}")
    print(f"Exclusive products purchased: {s['exclusive_products_purchased']}")
    return 0


def cmd_membership_job(db, args):
    s = membership.run_membership_job(db)
    print(f"Expiring notices: {s['expiring_notified']}")
    print(f"Renewed: {s['renewed']}  failed: {s['renew_failed']}")
    return 1 if s["renew_failed"] else 0


def cmd_seed_coupons(db, args):
    created, skipped = coupons.seed_demo_coupons(db)
    print(f"Created {created} coupons, skipped {skipped} existing")
    return 0


def cmd_create_coupon(db, args):
    c = coupons.create_coupon(db, {
        "code": args.code,
        "description": args.description,
        "discount_type": args.type,
        "discount_value": args.value,
        "min_order_amount": args.min_order,
        "max_discount_amount": args.max_discount,
        "usage_limit": args.usage_limit,
        "valid_from": args.valid_from,
        "valid_until": args.until,
    })
    print(f"Created {c['code']} ({c['discount_type']} {c['discount_value']}) valid until {c['valid_until']:%Y-%m-%d}")
    return 0


def cmd_migrate_slugs(db, args):
    print(f"Updated {catalog.migrate_product_slugs(db)} products")
    return 0


def cmd_mark_member_products(db, args):
    n = catalog.mark_member_products(db, args.product_ids, exclusive=not args.unmark)
    print(f"Updated {n} products")
    return 0


def cmd_ensure_indexes(db, args):
    ensure_indexes(db)
    print("Indexes ensured")
    return 0


def build_parser():
    parser = argparse.ArgumentParser(prog="pawcart-maint", description="PawCart maintenance tasks")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("reconcile-orders", help="Back-fill membership discount on a member's orders")
    p.add_argument("user", help="User id, email or username")
    p.add_argument("--guest-id", action="append", help="Extra guest id the member ordered under")
    p.add_argument("--dry-run", action="store_true", help="Show the changes without writing")
    p.set_defaults(func=cmd_reconcile_orders)

    p = sub.add_parser("verify-discounts", help="Compare stored savings with order discounts")
    p.set_defaults(func=cmd_verify_discounts)

    p = sub.add_parser("membership-stats", help="Recompute a member's statistics")
    p.add_argument("user")
    p.add_argument("--no-refresh", action="store_true", help="Report without storing")
    p.set_defaults(func=cmd_membership_stats)

    p = sub.add_parser("membership-job", help="Expiry notices and auto-renewals")
    p.set_defaults(func=cmd_membership_job)

    p = sub.add_parser("seed-coupons", help="Insert the demo coupons")
    p.set_defaults(func=cmd_seed_coupons)

    p = sub.add_parser("create-coupon", help="Create one coupon")
    p.add_argument("--code", required=True)
    p.add_argument("--type", required=True, choices=["percentage", "fixed", "free_delivery"])
    p.add_argument("--value", required=True, type=float)
    p.add_argument("--until", required=True, help="Valid until (YYYY-MM-DD)")
    p.add_argument("--valid-from", help="Valid from (YYYY-MM-DD), default now")
    p.add_argument("--min-order", type=float)
    p.add_argument("--max-discount", type=float)
    p.add_argument("--usage-limit", type=int)
    p.add_argument("--description")
    p.set_defaults(func=cmd_create_coupon)

    p = sub.add_parser("migrate-slugs", help="Give every product a slug")
    p.set_defaults(func=cmd_migrate_slugs)

    p = sub.add_parser("mark-member-products", help="Flag products as member exclusive")
    p.add_argument("product_ids", nargs="+")
    p.add_argument("--unmark", action="store_true")
    p.set_defaults(func=cmd_mark_member_products)

    p = sub.add_parser("ensure-indexes", help="Create MongoDB indexes")
    p.set_defaults(func=cmd_ensure_indexes)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        return args.func(get_db(), args)
    except ShopError as e:
        print(f"error: {e.message}", file=sys.stderr)
        log.error("%s failed: %s", args.command, e.code)
        return 2


if __name__ == "__main__":
    sys.exit(main())

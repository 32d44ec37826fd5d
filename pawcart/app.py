# app.py - PawCart Flask API (MongoDB-only)

from flask import Flask, request, jsonify
from flask_cors import CORS
from pymongo import errors as mongo_errors
from werkzeug.exceptions import HTTPException

from . import cart, catalog, coupons, membership, orders, pricing, wallet
from .db import get_db, safe_doc, ensure_indexes, now_iso
from .errors import ShopError, Forbidden
from .logger import get_logger
from .recommendations import RecommendationService
from .settings import (
    ADMIN_SECRET, ALLOW_PIN_PARAM, ENSURE_INDEXES_ON_START, AUTO_SEED_COUPONS_ON_START,
)

log = get_logger("api")

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}}, supports_credentials=True)


# -------------------------------------------------
# HELPERS
# -------------------------------------------------
def _body():
    return request.get_json(silent=True) or {}


def _pin_or_header_ok():
    # Header takes precedence
    if request.headers.get("X-Admin-Secret") == ADMIN_SECRET:
        return True
    if not ALLOW_PIN_PARAM:
        return False
    pin = request.args.get("admin_pin") or _body().get("admin_pin")
    return bool(pin) and (pin == ADMIN_SECRET)


def require_admin():
    if not _pin_or_header_ok():
        raise Forbidden("admin_required", "Admin secret required")


def _user_id():
    uid = request.args.get("user_id") or _body().get("user_id")
    if not uid:
        raise ShopError("user_id_required", "User ID is required")
    return uid


def _int_arg(name, default):
    try:
        return int(request.args.get(name, default))
    except (TypeError, ValueError):
        raise ShopError("bad_request", f"{name} must be a number")


def _recs_out(recs):
    return [{"product": safe_doc(r["product"]), "score": r["score"], "reason": r["reason"]} for r in recs]


# -------------------------------------------------
# ERRORS
# -------------------------------------------------
@app.errorhandler(ShopError)
def handle_shop_error(e):
    return jsonify(e.to_dict()), e.status


@app.errorhandler(mongo_errors.PyMongoError)
def handle_mongo_error(e):
    code = "db_read_failed" if request.method == "GET" else "db_write_failed"
    log.error("%s %s: %s", request.method, request.path, e)
    return jsonify({"ok": False, "error": code, "details": str(e)}), 500


@app.errorhandler(Exception)
def handle_unexpected(e):
    if isinstance(e, HTTPException):
        return jsonify({"ok": False, "error": e.name.lower().replace(" ", "_")}), e.code
    log.exception("unhandled error on %s %s", request.method, request.path)
    return jsonify({"ok": False, "error": "server_error", "details": str(e)}), 500


# init indexes once per cold start (and optional coupon seed)
if ENSURE_INDEXES_ON_START:
    try:
        _db_boot = get_db()
        ensure_indexes(_db_boot)
        if AUTO_SEED_COUPONS_ON_START:
            coupons.seed_demo_coupons(_db_boot)
    except mongo_errors.PyMongoError as e:
        log.warning("startup index/seed skipped: %s", e)


# -------------------------------------------------
# ROUTES
# -------------------------------------------------
@app.route("/", methods=["GET"])
@app.route("/api/health", methods=["GET"])
def health():
    try:
        db = get_db()
        return jsonify({
            "ok": True,
            "service": "PawCart (mongo)",
            "db": "up",
            "now_utc": now_iso(),
            "orders_count": db.orders.estimated_document_count(),
            "products_count": db.products.estimated_document_count(),
        }), 200
    except mongo_errors.PyMongoError as e:
        return jsonify({"ok": True, "service": "PawCart (mongo)", "db": "down", "error": str(e)}), 200


# ---------------- CATALOG ----------------
@app.route("/api/products", methods=["GET"])
def products_list():
    exclusive = request.args.get("member_exclusive")
    items = catalog.list_products(
        get_db(),
        category_id=request.args.get("category_id"),
        brand_id=request.args.get("brand_id"),
        q=request.args.get("q"),
        member_exclusive=None if exclusive is None else exclusive.lower() == "true",
        limit=_int_arg("limit", 50),
    )
    return jsonify({"ok": True, "products": [safe_doc(p) for p in items]}), 200


@app.route("/api/products/<ident>", methods=["GET"])
def product_detail(ident):
    return jsonify({"ok": True, "product": safe_doc(catalog.get_product(get_db(), ident))}), 200


@app.route("/api/categories", methods=["GET"])
def categories_list():
    return jsonify({"ok": True, "categories": [safe_doc(c) for c in catalog.list_categories(get_db())]}), 200


@app.route("/api/brands", methods=["GET"])
def brands_list():
    return jsonify({"ok": True, "brands": [safe_doc(b) for b in catalog.list_brands(get_db())]}), 200


# ---------------- CART ----------------
@app.route("/api/cart/<user_id>", methods=["GET"])
def cart_get(user_id):
    return jsonify({"ok": True, "cart": safe_doc(cart.get_cart(get_db(), user_id))}), 200


@app.route("/api/cart/add", methods=["POST"])
def cart_add():
    body = _body()
    c = cart.add_item(get_db(), _user_id(), body.get("product_id"), body.get("quantity", 1))
    return jsonify({"ok": True, "cart": safe_doc(c)}), 200


@app.route("/api/cart/update", methods=["PUT"])
def cart_update():
    body = _body()
    c = cart.update_item(get_db(), _user_id(), body.get("product_id"), body.get("quantity"))
    return jsonify({"ok": True, "cart": safe_doc(c)}), 200


@app.route("/api/cart/clear/<user_id>", methods=["DELETE"])
def cart_clear(user_id):
    cart.clear_cart(get_db(), user_id)
    return jsonify({"ok": True}), 200


# ---------------- PRICING ----------------
@app.route("/api/checkout/quote", methods=["POST"])
def checkout_quote():
    q = orders.quote_checkout(get_db(), _body())
    return jsonify({"ok": True, "quote": q.as_dict()}), 200


@app.route("/api/coupons/validate", methods=["POST"])
def coupon_validate():
    body = _body()
    try:
        amount = float(body.get("order_amount") or 0)
    except (TypeError, ValueError):
        raise ShopError("bad_request", "order_amount must be a number")
    return jsonify({"ok": True, "coupon": coupons.validate_coupon(get_db(), body.get("code"), amount)}), 200


# ---------------- ORDERS ----------------
@app.route("/api/orders", methods=["POST"])
def order_create():
    order, invoice = orders.place_order(get_db(), _body())
    return jsonify({
        "ok": True,
        "order": safe_doc(order),
        "invoice_number": invoice["invoice_number"],
    }), 201


@app.route("/api/orders", methods=["GET"])
def order_list_admin():
    require_admin()
    out = orders.list_orders(get_db(), status=request.args.get("status"), limit=_int_arg("limit", 100))
    return jsonify({"ok": True, "orders": [safe_doc(o) for o in out]}), 200


@app.route("/api/orders/user/<user_id>", methods=["GET"])
def order_list_user(user_id):
    out = orders.list_orders(get_db(), user_id=user_id)
    return jsonify({"ok": True, "orders": [safe_doc(o) for o in out]}), 200


@app.route("/api/orders/<ident>", methods=["GET"])
def order_detail(ident):
    return jsonify({"ok": True, "order": safe_doc(orders.get_order(get_db(), ident))}), 200


@app.route("/api/orders/<ident>/status", methods=["PUT"])
def order_status(ident):
    require_admin()
    o = orders.update_order_status(get_db(), ident, _body().get("status"))
    return jsonify({"ok": True, "order": safe_doc(o)}), 200


@app.route("/api/invoices/<ident>", methods=["GET"])
def invoice_detail(ident):
    return jsonify({"ok": True, "invoice": safe_doc(orders.get_invoice(get_db(), ident))}), 200


@app.route("/api/invoices/user/<user_id>", methods=["GET"])
def invoice_list(user_id):
    return jsonify({"ok": True, "invoices": [safe_doc(i) for i in orders.list_invoices(get_db(), user_id)]}), 200


# ---------------- MEMBERSHIP ----------------
@app.route("/api/membership/purchase", methods=["POST"])
def membership_purchase():
    body = _body()
    m = membership.purchase_membership(
        get_db(), _user_id(), body.get("tier"), body.get("payment_method"), body.get("months", 1),
    )
    return jsonify({"ok": True, "membership": safe_doc(m)}), 200


@app.route("/api/membership/<user_id>", methods=["GET"])
def membership_get(user_id):
    user = membership.find_user(get_db(), user_id)
    if not user:
        raise ShopError("user_not_found", "User not found", status=404)
    m = user.get("membership")
    return jsonify({
        "ok": True,
        "membership": safe_doc(m),
        "active": pricing.membership_is_active(m),
        "discount_rate": pricing.membership_rate(pricing.active_tier(user)),
    }), 200


@app.route("/api/membership/statistics/<user_id>", methods=["GET"])
def membership_stats(user_id):
    stats = membership.membership_statistics(get_db(), user_id, refresh=True)
    return jsonify({"ok": True, "statistics": safe_doc(stats)}), 200


# ---------------- WALLET ----------------
@app.route("/api/wallet", methods=["GET"])
def wallet_get():
    out = wallet.wallet_summary(get_db(), _user_id())
    out["wallet"] = safe_doc(out["wallet"])
    return jsonify({"ok": True, **out}), 200


@app.route("/api/wallet/transactions", methods=["GET"])
def wallet_transactions():
    rows, page = wallet.list_transactions(
        get_db(), _user_id(), limit=_int_arg("limit", 50), offset=_int_arg("offset", 0),
    )
    return jsonify({"ok": True, "transactions": [safe_doc(t) for t in rows], "pagination": page}), 200


@app.route("/api/wallet/redeem/free-delivery", methods=["POST"])
def wallet_redeem_free_delivery():
    c = coupons.redeem_free_delivery(get_db(), _user_id())
    return jsonify({"ok": True, "coupon": safe_doc(c)}), 201


@app.route("/api/tasks/check-in", methods=["POST"])
def task_check_in():
    return jsonify({"ok": True, **wallet.check_in(get_db(), _user_id())}), 200


@app.route("/api/tasks/check-in/status", methods=["GET"])
def task_check_in_status():
    return jsonify({"ok": True, **safe_doc(wallet.check_in_status(get_db(), _user_id()))}), 200


@app.route("/api/tasks/status", methods=["GET"])
def task_list_status():
    return jsonify({"ok": True, **safe_doc(wallet.task_status(get_db(), _user_id()))}), 200


@app.route("/api/tasks/complete", methods=["POST"])
def task_complete():
    out = wallet.complete_task(get_db(), _user_id(), _body().get("task_type"))
    return jsonify({"ok": True, "task": out}), 200


@app.route("/api/games/daily-status", methods=["GET"])
def game_daily_status():
    return jsonify({"ok": True, **wallet.daily_game_status(get_db(), _user_id())}), 200


@app.route("/api/games/<game>", methods=["POST"])
def game_play(game):
    db, body, uid = get_db(), _body(), _user_id()
    if game == "feed-pet":
        out = wallet.play_feed_pet(db, uid)
    elif game == "match-three":
        out = wallet.play_match_three(db, uid, body.get("score"))
    elif game == "lucky-wheel":
        out = wallet.play_lucky_wheel(db, uid)
    elif game == "quiz":
        out = wallet.play_quiz(db, uid, body.get("correct_answers"), body.get("total_questions"))
    else:
        raise ShopError("invalid_game_type", "Unknown game", status=404)
    return jsonify({"ok": True, **out}), 200


@app.route("/api/games/leaderboard", methods=["GET"])
def game_leaderboard():
    rows = wallet.leaderboard(get_db(), request.args.get("game_type"), limit=_int_arg("limit", 10))
    return jsonify({"ok": True, "leaderboard": rows}), 200


# ---------------- RECOMMENDATIONS ----------------
@app.route("/api/recommendations/track", methods=["POST"])
def recommendations_track():
    body = _body()
    tracked = RecommendationService(get_db()).track_behavior(
        body.get("user_id"), body.get("session_id"), body.get("product_id"),
        body.get("behavior_type"), body.get("metadata"),
    )
    return jsonify({"ok": True, "tracked": tracked}), 200


@app.route("/api/recommendations/personalized", methods=["GET"])
def recommendations_personalized():
    exclude = [x for x in (request.args.get("exclude") or "").split(",") if x]
    recs = RecommendationService(get_db()).personalized(
        user_id=request.args.get("user_id"), session_id=request.args.get("session_id"),
        limit=_int_arg("limit", 12), exclude=exclude,
    )
    return jsonify({"ok": True, "recommendations": _recs_out(recs)}), 200


@app.route("/api/recommendations/trending", methods=["GET"])
def recommendations_trending():
    recs = RecommendationService(get_db()).trending(limit=_int_arg("limit", 12))
    return jsonify({"ok": True, "recommendations": _recs_out(recs)}), 200


@app.route("/api/recommendations/similar/<product_id>", methods=["GET"])
def recommendations_similar(product_id):
    recs = RecommendationService(get_db()).similar(product_id, limit=_int_arg("limit", 12))
    return jsonify({"ok": True, "recommendations": _recs_out(recs)}), 200


@app.route("/api/recommendations/bought-together/<product_id>", methods=["GET"])
def recommendations_bought_together(product_id):
    recs = RecommendationService(get_db()).frequently_bought_together(product_id, limit=_int_arg("limit", 6))
    return jsonify({"ok": True, "recommendations": _recs_out(recs)}), 200

# NOTE: no app.run(); importable for gunicorn / serverless

import re

from pawcart import wallet

from conftest import customer, make_coupon, make_product, make_user

ADMIN = {"X-Admin-Secret": "changeme-admin"}


def _order_body(product, qty=1, **extra):
    body = {
        "items": [{"product_id": product["_internal_id"], "quantity": qty}],
        "customer_info": customer(),
        "payment_method": "card",
    }
    body.update(extra)
    return body


class TestBasics:
    def test_health(self, client):
        r = client.get("/api/health")
        assert r.status_code == 200
        data = r.get_json()
        assert data["ok"] is True
        assert data["db"] == "up"
        assert data["orders_count"] == 0

    def test_unknown_route_is_json(self, client):
        r = client.get("/api/nowhere")
        assert r.status_code == 404
        assert r.get_json() == {"ok": False, "error": "not_found"}

    def test_shop_error_shape(self, client):
        r = client.get("/api/products/missing")
        assert r.status_code == 404
        assert r.get_json() == {"ok": False, "error": "product_not_found", "message": "Product not found"}


class TestCatalogRoutes:
    def test_products_expose_id_not_internals(self, client, db):
        p = make_product(db, name="Tuna Treats", slug="tuna-treats")
        data = client.get("/api/products?q=tuna").get_json()
        assert len(data["products"]) == 1
        item = data["products"][0]
        assert item["id"] == p["_internal_id"]
        assert "_id" not in item
        assert "_internal_id" not in item
        assert client.get("/api/products/tuna-treats").get_json()["product"]["name"] == "Tuna Treats"

    def test_bad_limit(self, client):
        r = client.get("/api/products?limit=lots")
        assert r.status_code == 400
        assert r.get_json()["error"] == "bad_request"


class TestCartRoutes:
    def test_add_update_clear(self, client, db):
        p = make_product(db, price=8.0)
        r = client.post("/api/cart/add", json={"user_id": "u1", "product_id": p["_internal_id"], "quantity": 2})
        assert r.get_json()["cart"]["total"] == 16.0
        r = client.put("/api/cart/update", json={"user_id": "u1", "product_id": p["_internal_id"], "quantity": 3})
        assert r.get_json()["cart"]["items"][0]["quantity"] == 3
        client.delete("/api/cart/clear/u1")
        assert client.get("/api/cart/u1").get_json()["cart"]["items"] == []

    def test_quantity_must_be_given(self, client, db):
        p = make_product(db)
        client.post("/api/cart/add", json={"user_id": "u1", "product_id": p["_internal_id"]})
        for qty in (None, "two"):
            r = client.put("/api/cart/update", json={"user_id": "u1", "product_id": p["_internal_id"], "quantity": qty})
            assert r.status_code == 400
            assert r.get_json()["error"] == "bad_quantity"
        assert client.get("/api/cart/u1").get_json()["cart"]["items"][0]["quantity"] == 1

    def test_user_id_required(self, client, db):
        r = client.post("/api/cart/add", json={"product_id": "x"})
        assert r.status_code == 400
        assert r.get_json()["error"] == "user_id_required"


class TestCheckoutRoutes:
    def test_quote(self, client, db):
        p = make_product(db, price=40.0)
        r = client.post("/api/checkout/quote", json=_order_body(p, qty=2))
        q = r.get_json()["quote"]
        assert q["subtotal"] == 80.0
        assert q["shipping_fee"] == 5.99
        assert q["total"] == 85.99

    def test_validate_coupon(self, client, db):
        make_coupon(db, code="TENOFF", discount_type="fixed", value=10, min_order_amount=50)
        ok = client.post("/api/coupons/validate", json={"code": "tenoff", "order_amount": 60})
        assert ok.get_json()["coupon"]["discount_amount"] == 10.0
        low = client.post("/api/coupons/validate", json={"code": "tenoff", "order_amount": 20})
        assert low.status_code == 400
        assert low.get_json()["error"] == "coupon_min_order"
        assert low.get_json()["min_order_amount"] == 50.0

    def test_place_and_fetch_order(self, client, db):
        p = make_product(db, price=120.0)
        r = client.post("/api/orders", json=_order_body(p, user_id="u1"))
        assert r.status_code == 201
        data = r.get_json()
        order = data["order"]
        assert re.fullmatch(r"PC-\d{8}-[0-9A-F]{6}", order["order_id"])
        assert order["total"] == 120.0
        assert order["payment_status"] == "Paid"
        assert order["created_at"].endswith("Z")

        by_public = client.get(f"/api/orders/{order['order_id']}").get_json()["order"]
        assert by_public["id"] == order["id"]
        assert client.get("/api/orders/user/u1").get_json()["orders"][0]["id"] == order["id"]
        inv = client.get(f"/api/invoices/{data['invoice_number']}").get_json()["invoice"]
        assert inv["order_id"] == order["id"]
        assert len(client.get("/api/invoices/user/u1").get_json()["invoices"]) == 1

    def test_bad_wallet_amount_is_a_client_error(self, client, db):
        p = make_product(db, stock=3)
        r = client.post("/api/orders", json=_order_body(p, wallet_amount="abc"))
        assert r.status_code == 400
        assert r.get_json()["error"] == "bad_request"
        assert db.orders.count_documents({}) == 0
        assert db.products.find_one({"_internal_id": p["_internal_id"]})["stock_quantity"] == 3

    def test_zero_quantity_is_rejected(self, client, db):
        p = make_product(db, stock=3)
        r = client.post("/api/orders", json=_order_body(p, qty=0))
        assert r.status_code == 400
        assert r.get_json()["error"] == "bad_quantity"
        assert db.orders.count_documents({}) == 0

    def test_members_only_is_forbidden(self, client, db):
        p = make_product(db, is_member_exclusive=True)
        r = client.post("/api/orders", json=_order_body(p))
        assert r.status_code == 403
        assert r.get_json()["error"] == "members_only_product"


class TestAdminRoutes:
    def test_list_requires_secret(self, client, db):
        assert client.get("/api/orders").status_code == 403
        assert client.get("/api/orders", headers={"X-Admin-Secret": "wrong"}).status_code == 403
        assert client.get("/api/orders", headers=ADMIN).status_code == 200
        assert client.get("/api/orders?admin_pin=changeme-admin").status_code == 200

    def test_status_change(self, client, db):
        p = make_product(db, stock=4)
        order = client.post("/api/orders", json=_order_body(p, qty=2)).get_json()["order"]
        url = f"/api/orders/{order['order_id']}/status"

        assert client.put(url, json={"status": "Cancelled"}).status_code == 403
        r = client.put(url, json={"status": "cancelled"}, headers=ADMIN)
        assert r.get_json()["order"]["status"] == "Cancelled"
        assert db.products.find_one({"_internal_id": p["_internal_id"]})["stock_quantity"] == 4

        bad = client.put(url, json={"status": "teleported"}, headers=ADMIN)
        assert bad.status_code == 400
        assert bad.get_json()["error"] == "invalid_status"


class TestMembershipRoutes:
    def test_purchase_and_read(self, client, db):
        u = make_user(db, "mia")
        w = wallet.get_or_create_wallet(db, u["_internal_id"])
        wallet.add_transaction(db, w, wallet.EARN, "TEST", 40)
        body = {"user_id": u["_internal_id"], "tier": "Silver Paw"}

        refused = client.post("/api/membership/purchase", json=dict(body, payment_method="card"))
        assert refused.status_code == 400
        assert refused.get_json()["error"] == "payment_required"

        r = client.post("/api/membership/purchase", json=dict(body, payment_method="my-wallet"))
        assert r.status_code == 200
        assert r.get_json()["membership"]["tier"] == "Silver Paw"

        data = client.get("/api/membership/mia").get_json()
        assert data["active"] is True
        assert data["discount_rate"] == 0.05

        stats = client.get(f"/api/membership/statistics/{u['_internal_id']}").get_json()["statistics"]
        assert stats["orders_count"] == 0

    def test_unknown_user(self, client):
        r = client.get("/api/membership/ghost")
        assert r.status_code == 404
        assert r.get_json()["error"] == "user_not_found"


class TestWalletRoutes:
    def test_summary_and_check_in(self, client, db):
        r = client.post("/api/tasks/check-in", json={"user_id": "u9"})
        assert r.get_json()["reward"] == 1.0
        again = client.post("/api/tasks/check-in", json={"user_id": "u9"})
        assert again.status_code == 400
        assert again.get_json()["error"] == "already_checked_in"

        summary = client.get("/api/wallet?user_id=u9").get_json()
        assert summary["wallet"]["balance"] == 1.0
        assert summary["limits"]["daily_earning_remaining"] == 49.0
        assert client.get("/api/tasks/check-in/status?user_id=u9").get_json()["checked_in_today"] is True

        txns = client.get("/api/wallet/transactions?user_id=u9").get_json()
        assert txns["pagination"]["total"] == 1
        assert txns["transactions"][0]["source"] == "DAILY_CHECKIN"

    def test_tasks(self, client):
        r = client.post("/api/tasks/complete", json={"user_id": "u9", "task_type": "REVIEW_ORDER"})
        assert r.get_json()["task"]["reward"] == 3.0
        status = client.get("/api/tasks/status?user_id=u9").get_json()
        assert status["completed_tasks"] == {"REVIEW_ORDER": True}

    def test_redeem_free_delivery(self, client, db):
        w = wallet.get_or_create_wallet(db, "u9")
        wallet.add_transaction(db, w, wallet.EARN, "TEST", 10)
        r = client.post("/api/wallet/redeem/free-delivery", json={"user_id": "u9"})
        assert r.status_code == 201
        assert r.get_json()["coupon"]["code"].startswith("FREEDEL")
        again = client.post("/api/wallet/redeem/free-delivery", json={"user_id": "u9"})
        assert again.get_json()["error"] == "insufficient_wallet_balance"


class TestGameRoutes:
    def test_play_and_leaderboard(self, client, db):
        make_user(db, "gamer")
        uid = db.users.find_one({"username": "gamer"})["_internal_id"]
        r = client.post("/api/games/match-three", json={"user_id": uid, "score": 2500})
        assert r.get_json()["reward"] == 3.0
        r = client.post("/api/games/quiz", json={"user_id": uid, "correct_answers": 2, "total_questions": 3})
        assert r.get_json()["reward"] == 2.0

        status = client.get(f"/api/games/daily-status?user_id={uid}").get_json()
        assert status["total_games_today"] == 2
        board = client.get("/api/games/leaderboard?game_type=MATCH_THREE").get_json()["leaderboard"]
        assert board[0]["username"] == "gamer"

    def test_unknown_game(self, client):
        r = client.post("/api/games/chess", json={"user_id": "u1"})
        assert r.status_code == 404
        assert r.get_json()["error"] == "invalid_game_type"


class TestRecommendationRoutes:
    def test_track_and_trending(self, client, db):
        p = make_product(db)
        r = client.post("/api/recommendations/track",
                        json={"session_id": "s1", "product_id": p["_internal_id"], "behavior_type": "view"})
        assert r.get_json()["tracked"] is True
        recs = client.get("/api/recommendations/trending").get_json()["recommendations"]
        assert recs[0]["product"]["id"] == p["_internal_id"]
        assert recs[0]["reason"] == "Trending now"

    def test_similar_and_bought_together(self, client, db):
        a = make_product(db, category_id="c1")
        b = make_product(db, category_id="c1")
        sim = client.get(f"/api/recommendations/similar/{a['_internal_id']}").get_json()["recommendations"]
        assert [r["product"]["id"] for r in sim] == [b["_internal_id"]]
        fbt = client.get(f"/api/recommendations/bought-together/{a['_internal_id']}").get_json()
        assert [r["product"]["id"] for r in fbt["recommendations"]] == [b["_internal_id"]]

    def test_personalized_with_exclude(self, client, db):
        db.pets.insert_one({"user_id": "u1", "species": "hamster"})
        keep = make_product(db, tags=["hamster"])
        drop = make_product(db, tags=["hamster"])
        r = client.get(f"/api/recommendations/personalized?user_id=u1&exclude={drop['_internal_id']}")
        assert [x["product"]["id"] for x in r.get_json()["recommendations"]] == [keep["_internal_id"]]

import re
from datetime import datetime, timedelta

import pytest

from pawcart import coupons, wallet
from pawcart.errors import ShopError

from conftest import make_coupon


class TestFindUsableCoupon:
    def test_lookup_is_case_insensitive(self, db):
        make_coupon(db, code="save10")
        c = coupons.find_usable_coupon(db, " Save10 ", 100)
        assert c["code"] == "SAVE10"

    def test_unknown_code(self, db):
        with pytest.raises(ShopError) as exc:
            coupons.find_usable_coupon(db, "NOPE", 100)
        assert exc.value.code == "invalid_coupon"
        assert exc.value.status == 404

    def test_inactive_code_is_invalid(self, db):
        make_coupon(db, code="OFF", is_active=False)
        with pytest.raises(ShopError) as exc:
            coupons.find_usable_coupon(db, "OFF", 100)
        assert exc.value.code == "invalid_coupon"

    def test_outside_validity_window(self, db):
        make_coupon(db, code="OLD", valid_from=datetime(2020, 1, 1), valid_until=datetime(2020, 2, 1))
        with pytest.raises(ShopError) as exc:
            coupons.find_usable_coupon(db, "OLD", 100)
        assert exc.value.code == "coupon_not_valid_now"

    def test_not_yet_valid(self, db):
        soon = datetime.utcnow() + timedelta(days=2)
        make_coupon(db, code="SOON", valid_from=soon, valid_until=soon + timedelta(days=5))
        with pytest.raises(ShopError) as exc:
            coupons.find_usable_coupon(db, "SOON", 100)
        assert exc.value.code == "coupon_not_valid_now"

    def test_minimum_order(self, db):
        make_coupon(db, code="BIG", min_order_amount=150)
        with pytest.raises(ShopError) as exc:
            coupons.find_usable_coupon(db, "BIG", 149.99)
        assert exc.value.code == "coupon_min_order"
        assert exc.value.details["min_order_amount"] == 150.0
        assert "150.00" in exc.value.message
        assert coupons.find_usable_coupon(db, "BIG", 150)["code"] == "BIG"

    def test_usage_limit_reached(self, db):
        make_coupon(db, code="ONCE", usage_limit=1)
        db.coupons.update_one({"code": "ONCE"}, {"$set": {"used_count": 1}})
        with pytest.raises(ShopError) as exc:
            coupons.find_usable_coupon(db, "ONCE", 100)
        assert exc.value.code == "coupon_usage_limit"

    def test_blank_code(self, db):
        with pytest.raises(ShopError) as exc:
            coupons.find_usable_coupon(db, "  ", 100)
        assert exc.value.code == "coupon_code_required"


class TestValidateCoupon:
    def test_reports_discount_amount(self, db):
        make_coupon(db, code="WELCOME", value=10, max_discount_amount=50)
        out = coupons.validate_coupon(db, "WELCOME", 235)
        assert out == {"code": "WELCOME", "discount_type": "percentage", "discount_value": 10.0,
                       "discount_amount": 24.0}


class TestClaimCoupon:
    def test_claim_counts_and_stops_at_limit(self, db):
        c = make_coupon(db, code="TWICE", usage_limit=2)
        assert coupons.claim_coupon(db, c)["used_count"] == 1
        assert coupons.claim_coupon(db, c)["used_count"] == 2
        with pytest.raises(ShopError) as exc:
            coupons.claim_coupon(db, c)
        assert exc.value.code == "coupon_usage_limit"
        assert db.coupons.find_one({"code": "TWICE"})["used_count"] == 2

    def test_unlimited_coupon(self, db):
        c = make_coupon(db, code="ANY")
        for _ in range(5):
            coupons.claim_coupon(db, c)
        assert db.coupons.find_one({"code": "ANY"})["used_count"] == 5

    def test_release_never_goes_negative(self, db):
        make_coupon(db, code="R")
        coupons.release_coupon(db, "R")
        assert db.coupons.find_one({"code": "R"})["used_count"] == 0


class TestCreateCoupon:
    def test_duplicate_code(self, db):
        make_coupon(db, code="DUP")
        with pytest.raises(ShopError) as exc:
            make_coupon(db, code="dup")
        assert exc.value.code == "coupon_exists"
        assert exc.value.status == 409

    @pytest.mark.parametrize("overrides", [
        {"code": ""},
        {"discount_type": "bogo"},
        {"value": 0},
        {"valid_until": datetime(2000, 1, 1)},
        {"usage_limit": 0},
    ])
    def test_rejects_bad_input(self, db, overrides):
        with pytest.raises(ShopError) as exc:
            make_coupon(db, **overrides)
        assert exc.value.code == "bad_coupon"

    def test_accepts_iso_strings(self, db):
        c = coupons.create_coupon(db, {
            "code": "ISO", "discount_type": "fixed", "discount_value": "5",
            "valid_from": "2025-01-01", "valid_until": "2025-06-30T00:00:00Z",
        })
        assert c["valid_from"] == datetime(2025, 1, 1)
        assert c["valid_until"] == datetime(2025, 6, 30)
        assert c["discount_value"] == 5.0


class TestSeedDemoCoupons:
    def test_seed_is_idempotent(self, db):
        assert coupons.seed_demo_coupons(db) == (7, 0)
        assert coupons.seed_demo_coupons(db) == (0, 7)
        assert db.coupons.count_documents({}) == 7
        assert db.coupons.find_one({"code": "SUMMER15"})["is_active"] is False

    def test_seeded_codes_are_usable_today(self, db):
        coupons.seed_demo_coupons(db)
        for code, amount in (("WELCOME10", 200), ("REFERRAL20", 150), ("FREEDEL1234", 10)):
            assert coupons.find_usable_coupon(db, code, amount)["code"] == code
        welcome = db.coupons.find_one({"code": "WELCOME10"})
        assert welcome["valid_until"] > datetime.utcnow() + timedelta(days=300)
        with pytest.raises(ShopError):
            coupons.find_usable_coupon(db, "SUMMER15", 300)

    def test_existing_code_untouched(self, db):
        make_coupon(db, code="WELCOME10", value=99)
        created, skipped = coupons.seed_demo_coupons(db)
        assert (created, skipped) == (6, 1)
        assert db.coupons.find_one({"code": "WELCOME10"})["discount_value"] == 99.0


class TestRedeemFreeDelivery:
    def test_spends_wallet_and_mints_single_use_coupon(self, db):
        w = wallet.get_or_create_wallet(db, "u1")
        wallet.add_transaction(db, w, wallet.EARN, "TEST", 15)

        c = coupons.redeem_free_delivery(db, "u1")
        assert re.fullmatch(r"FREEDEL\d{4}", c["code"])
        assert c["discount_type"] == "free_delivery"
        assert c["usage_limit"] == 1
        assert (c["valid_until"] - c["valid_from"]).days == 90
        assert db.wallets.find_one({"user_id": "u1"})["balance"] == 5.0
        # usable right away
        assert coupons.find_usable_coupon(db, c["code"], 1)["code"] == c["code"]

    def test_insufficient_balance_creates_nothing(self, db):
        with pytest.raises(ShopError) as exc:
            coupons.redeem_free_delivery(db, "u2")
        assert exc.value.code == "insufficient_wallet_balance"
        assert db.coupons.count_documents({}) == 0

from datetime import datetime

import pytest

from pawcart.db import new_id
from pawcart.recommendations import RecommendationService, merge_recommendations

from conftest import make_product


@pytest.fixture
def svc(db):
    return RecommendationService(db)


def _ids(recs):
    return [r["product"]["_internal_id"] for r in recs]


def _order(db, user_id, *products, status="Delivered"):
    db.orders.insert_one({
        "_internal_id": new_id(),
        "user_id": user_id,
        "items": [{"product_id": p["_internal_id"], "quantity": 1, "price": p["price"]} for p in products],
        "status": status,
        "created_at": datetime.utcnow(),
    })


class TestMerge:
    def test_higher_score_wins_lower_is_averaged(self):
        a, b = {"_internal_id": "a"}, {"_internal_id": "b"}
        recs = [
            {"product": a, "score": 0.5, "reason": "x"},
            {"product": a, "score": 0.8, "reason": "y"},
            {"product": b, "score": 0.6, "reason": "z"},
            {"product": b, "score": 0.4, "reason": "w"},
        ]
        out = merge_recommendations(recs, 10)
        assert [(r["product"]["_internal_id"], r["score"], r["reason"]) for r in out] == [
            ("a", 0.8, "y"), ("b", 0.5, "z"),
        ]

    def test_limit(self):
        recs = [{"product": {"_internal_id": str(i)}, "score": i / 10, "reason": ""} for i in range(5)]
        assert [r["product"]["_internal_id"] for r in merge_recommendations(recs, 2)] == ["4", "3"]


class TestTrackBehavior:
    def test_records_with_product_context(self, db, svc):
        p = make_product(db, category_id="cat-food", brand_id="acme")
        assert svc.track_behavior("u1", None, p["_internal_id"], "view") is True
        row = db.user_behaviors.find_one()
        assert row["category_id"] == "cat-food"
        assert row["brand_id"] == "acme"

    @pytest.mark.parametrize("user_id,session_id,kind", [
        ("u1", None, "stare"),
        (None, None, "view"),
    ])
    def test_ignores_bad_input(self, db, svc, user_id, session_id, kind):
        p = make_product(db)
        assert svc.track_behavior(user_id, session_id, p["_internal_id"], kind) is False
        assert db.user_behaviors.count_documents({}) == 0

    def test_unknown_product(self, svc):
        assert svc.track_behavior(None, "s1", "missing", "click") is False


class TestPersonalized:
    def test_browsing_by_session(self, db, svc):
        seen = make_product(db, category_id="cat-food")
        sibling = make_product(db, category_id="cat-food")
        other = make_product(db, category_id="dog-food")
        svc.track_behavior(None, "s1", seen["_internal_id"], "view")

        recs = svc.personalized(session_id="s1")
        assert sibling["_internal_id"] in _ids(recs)
        assert other["_internal_id"] not in _ids(recs)

    def test_purchases_rank_above_browsing(self, db, svc):
        bought = make_product(db, brand_id="acme", category_id="treats")
        same_brand = make_product(db, brand_id="acme", category_id="toys")
        _order(db, "u1", bought)

        recs = svc.personalized(user_id="u1")
        top = {r["product"]["_internal_id"]: r for r in recs}
        assert top[same_brand["_internal_id"]]["score"] == 0.8
        assert top[same_brand["_internal_id"]]["reason"] == "Based on your purchase history"

    def test_collaborative(self, db, svc):
        a = make_product(db)
        c = make_product(db)
        _order(db, "u1", a)
        _order(db, "u2", a, c)
        recs = svc.personalized(user_id="u1")
        assert _ids(recs) == [c["_internal_id"]]
        assert recs[0]["score"] == 0.7

    def test_cancelled_orders_ignored(self, db, svc):
        a = make_product(db)
        c = make_product(db)
        _order(db, "u1", a)
        _order(db, "u2", a, c, status="Cancelled")
        assert svc.personalized(user_id="u1") == []

    def test_pets(self, db, svc):
        db.categories.insert_one({"_internal_id": "cf", "slug": "cat-food", "name": "Cat Food"})
        db.pets.insert_one({"user_id": "u1", "species": "Cat"})
        food = make_product(db, category_id="cf")
        toy = make_product(db, tags=["cat"])
        make_product(db, tags=["dog"])
        recs = svc.personalized(user_id="u1")
        assert set(_ids(recs)) == {food["_internal_id"], toy["_internal_id"]}

    def test_out_of_stock_and_excluded_skipped(self, db, svc):
        db.pets.insert_one({"user_id": "u1", "species": "rabbit"})
        make_product(db, tags=["rabbit"], stock=0)
        keep = make_product(db, tags=["rabbit"])
        skip = make_product(db, tags=["rabbit"])
        untracked = make_product(db, tags=["rabbit"], stock=None)
        recs = svc.personalized(user_id="u1", exclude=[skip["_internal_id"]])
        assert set(_ids(recs)) == {keep["_internal_id"], untracked["_internal_id"]}

    def test_cached_until_new_behavior(self, db, svc):
        db.pets.insert_one({"user_id": "u1", "species": "bird"})
        first = make_product(db, tags=["bird"])
        assert _ids(svc.personalized(user_id="u1")) == [first["_internal_id"]]
        assert db.recommendation_cache.count_documents({"key": "u1"}) == 1

        second = make_product(db, tags=["bird"])
        assert _ids(svc.personalized(user_id="u1")) == [first["_internal_id"]]

        svc.track_behavior("u1", None, second["_internal_id"], "wishlist")
        assert set(_ids(svc.personalized(user_id="u1"))) == {first["_internal_id"], second["_internal_id"]}

    def test_anonymous_gets_nothing(self, svc):
        assert svc.personalized() == []


class TestSimilar:
    def test_scoring(self, db, svc):
        p = make_product(db, category_id="c1", brand_id="b1", price=100.0, tags=["cat", "fish"])
        best = make_product(db, category_id="c1", brand_id="b1", price=110.0, rating=4.5)
        plain = make_product(db, category_id="c1", brand_id="b2", price=200.0)
        tagged = make_product(db, category_id="c2", tags=["fish"])
        make_product(db, category_id="c1", is_active=False)

        recs = svc.similar(p["_internal_id"])
        scores = {r["product"]["_internal_id"]: r["score"] for r in recs}
        assert scores == {best["_internal_id"]: 1.1, plain["_internal_id"]: 0.5, tagged["_internal_id"]: 0.5}
        assert _ids(recs)[0] == best["_internal_id"]

    def test_unknown_product(self, svc):
        assert svc.similar("missing") == []

    def test_small_page_does_not_cap_a_bigger_one(self, db, svc):
        p = make_product(db, category_id="c1")
        others = {make_product(db, category_id="c1")["_internal_id"] for _ in range(3)}
        assert len(svc.similar(p["_internal_id"], limit=1)) == 1
        assert set(_ids(svc.similar(p["_internal_id"], limit=3))) == others
        assert len(svc.similar(p["_internal_id"], limit=2)) == 2

    def test_excluded_products_not_cached(self, db, svc):
        p = make_product(db, category_id="c1")
        a = make_product(db, category_id="c1")
        b = make_product(db, category_id="c1")
        assert _ids(svc.similar(p["_internal_id"], exclude=[a["_internal_id"]])) == [b["_internal_id"]]
        assert set(_ids(svc.similar(p["_internal_id"]))) == {a["_internal_id"], b["_internal_id"]}


class TestBoughtTogether:
    def test_frequency_over_orders(self, db, svc):
        a, b, c = make_product(db), make_product(db), make_product(db)
        _order(db, "u1", a, b)
        _order(db, "u2", a, b)
        _order(db, "u3", a, c)
        recs = svc.frequently_bought_together(a["_internal_id"])
        assert _ids(recs) == [b["_internal_id"], c["_internal_id"]]
        assert [r["score"] for r in recs] == [0.6667, 0.3333]

    def test_falls_back_to_similar(self, db, svc):
        a = make_product(db, category_id="c1")
        b = make_product(db, category_id="c1")
        recs = svc.frequently_bought_together(a["_internal_id"])
        assert _ids(recs) == [b["_internal_id"]]
        assert recs[0]["reason"] == "Similar category and features"


class TestTrending:
    def test_counts_recent_activity(self, db, svc):
        hot, warm = make_product(db), make_product(db)
        for _ in range(3):
            svc.track_behavior(None, "s1", hot["_internal_id"], "view")
        svc.track_behavior("u1", None, hot["_internal_id"], "purchase")
        svc.track_behavior(None, "s2", warm["_internal_id"], "click")

        recs = svc.trending()
        assert _ids(recs) == [hot["_internal_id"], warm["_internal_id"]]
        assert [r["score"] for r in recs] == [0.019, 0.003]

    def test_cached_page_grows_with_limit(self, db, svc):
        products = [make_product(db) for _ in range(3)]
        for p in products:
            svc.track_behavior(None, "s1", p["_internal_id"], "view")
        assert len(svc.trending(limit=1)) == 1
        assert len(svc.trending(limit=3)) == 3
        assert db.recommendation_cache.find_one({"key": "global"})["limit"] == 3

    def test_bestseller_fallback(self, db, svc):
        best = make_product(db, is_bestseller=True, rating=4.9)
        make_product(db, is_bestseller=True, stock=0)
        make_product(db)
        recs = svc.trending()
        assert _ids(recs) == [best["_internal_id"]]
        assert recs[0]["score"] == 0.8

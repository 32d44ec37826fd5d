"""
Product recommendations.

Plain queries against products / orders / user_behaviors, scored and merged
in memory. Each strategy tags its picks with a fixed score; when two
strategies pick the same product the higher score wins, a lower one pulls
the kept score towards it (mean of the two).

Results are cached in `recommendation_cache` per (key, kind) until
`expires_at`; a TTL index drops stale rows.
"""
from datetime import timedelta

from pymongo import DESCENDING, errors as mongo_errors

from .db import now_dt, new_id
from .logger import get_logger
from .settings import RECOMMENDATION_CACHE_MINUTES, RECOMMENDATION_DEFAULT_LIMIT

log = get_logger("recommendations")

BEHAVIOR_TYPES = ("view", "click", "add_to_cart", "purchase", "wishlist")

PERSONALIZED = "personalized"
SIMILAR = "similar"
BOUGHT_TOGETHER = "frequently_bought_together"
TRENDING = "trending"

SPECIES_CATEGORIES = {
    "cat": ["cat-food", "cat-toys", "cat-litter", "cat-care", "cat-accessories"],
    "dog": ["dog-food", "dog-accessories"],
    "rabbit": ["rabbit"],
    "bird": ["bird"],
    "hamster": ["hamster"],
    "other": [],
}

BROWSING_DAYS = 30
TRENDING_DAYS = 7


def _rec(product, score, reason):
    return {"product": product, "score": round(float(score), 4), "reason": reason}


def merge_recommendations(recs, limit):
    merged = {}
    for r in recs:
        pid = r["product"]["_internal_id"]
        existing = merged.get(pid)
        if existing is None or r["score"] > existing["score"]:
            merged[pid] = dict(r)
        else:
            existing["score"] = (existing["score"] + r["score"]) / 2
    out = sorted(merged.values(), key=lambda r: r["score"], reverse=True)
    return out[:limit]


class RecommendationService:
    def __init__(self, db, cache_minutes=RECOMMENDATION_CACHE_MINUTES, default_limit=RECOMMENDATION_DEFAULT_LIMIT):
        self.db = db
        self.cache_minutes = cache_minutes
        self.default_limit = default_limit

    # ---------------- queries ----------------
    def _available(self, extra=None, exclude=()):
        q = {
            "is_active": True,
            "$or": [{"stock_quantity": {"$gt": 0}}, {"stock_quantity": None}],
        }
        if exclude:
            q["_internal_id"] = {"$nin": list(exclude)}
        if extra:
            q = {"$and": [q, extra]}
        return q

    def _products(self, extra, exclude=(), limit=None, sort=None):
        cur = self.db.products.find(self._available(extra, exclude))
        if sort:
            cur = cur.sort(sort)
        if limit:
            cur = cur.limit(limit)
        return list(cur)

    # ---------------- tracking ----------------
    def track_behavior(self, user_id, session_id, product_id, behavior_type, metadata=None):
        """Record an interaction. Failures are logged, never raised."""
        if behavior_type not in BEHAVIOR_TYPES or not (user_id or session_id):
            return False
        try:
            product = self.db.products.find_one({"_internal_id": product_id})
            if not product:
                return False
            self.db.user_behaviors.insert_one({
                "_internal_id": new_id(),
                "user_id": user_id,
                "session_id": session_id,
                "product_id": product_id,
                "category_id": product.get("category_id"),
                "brand_id": product.get("brand_id"),
                "behavior_type": behavior_type,
                "metadata": metadata or {},
                "created_at": now_dt(),
            })
            self.invalidate(user_id or session_id)
            return True
        except mongo_errors.PyMongoError as e:
            log.warning("track behavior failed: %s", e)
            return False

    # ---------------- cache ----------------
    def _cached(self, key, kind, limit):
        try:
            row = self.db.recommendation_cache.find_one(
                {"key": key, "kind": kind, "expires_at": {"$gt": now_dt()}}
            )
            # a row built for a smaller page cannot serve a bigger one
            if not row or not row.get("product_ids") or int(row.get("limit") or 0) < limit:
                return None
            by_id = {p["_internal_id"]: p for p in self.db.products.find(
                {"_internal_id": {"$in": row["product_ids"]}, "is_active": True})}
            scores = row.get("scores") or []
            reasons = row.get("reasons") or []
            out = []
            for i, pid in enumerate(row["product_ids"]):
                if pid in by_id:
                    out.append(_rec(by_id[pid],
                                    scores[i] if i < len(scores) else 0.5,
                                    reasons[i] if i < len(reasons) else "Recommended for you"))
            return out
        except mongo_errors.PyMongoError as e:
            log.warning("recommendation cache read failed: %s", e)
            return None

    def _store(self, key, kind, recs, limit):
        if not recs:
            return
        try:
            now = now_dt()
            self.db.recommendation_cache.update_one(
                {"key": key, "kind": kind},
                {"$set": {
                    "product_ids": [r["product"]["_internal_id"] for r in recs],
                    "scores": [r["score"] for r in recs],
                    "reasons": [r["reason"] for r in recs],
                    "limit": limit,
                    "created_at": now,
                    "expires_at": now + timedelta(minutes=self.cache_minutes),
                }},
                upsert=True,
            )
        except mongo_errors.PyMongoError as e:
            log.warning("recommendation cache write failed: %s", e)

    def invalidate(self, key):
        if key:
            self.db.recommendation_cache.delete_many({"key": key, "kind": PERSONALIZED})

    # ---------------- personalised ----------------
    def personalized(self, user_id=None, session_id=None, limit=None, exclude=()):
        limit = limit or self.default_limit
        key = user_id or session_id
        if key and not exclude:
            cached = self._cached(key, PERSONALIZED, limit)
            if cached:
                return cached[:limit]

        recs = []
        if key:
            recs += self._from_browsing(user_id, session_id, limit, exclude)
        if user_id:
            recs += self._from_purchases(user_id, limit, exclude)
            recs += self._collaborative(user_id, limit, exclude)
        if key:
            recs += self._from_categories(user_id, session_id, limit, exclude)
        if user_id:
            recs += self._from_pets(user_id, limit, exclude)

        merged = merge_recommendations(recs, limit)
        if key and not exclude:
            self._store(key, PERSONALIZED, merged, limit)
        return merged

    def _behavior_query(self, user_id, session_id):
        return {"user_id": user_id} if user_id else {"session_id": session_id}

    def _from_browsing(self, user_id, session_id, limit, exclude):
        q = self._behavior_query(user_id, session_id)
        q["behavior_type"] = {"$in": ["view", "click"]}
        q["created_at"] = {"$gte": now_dt() - timedelta(days=BROWSING_DAYS)}
        recent = list(self.db.user_behaviors.find(q).sort("created_at", DESCENDING).limit(50))
        if not recent:
            return []
        categories = list({b["category_id"] for b in recent if b.get("category_id")})
        brands = list({b["brand_id"] for b in recent if b.get("brand_id")})
        products = self._products(
            {"$or": [{"category_id": {"$in": categories}}, {"brand_id": {"$in": brands}}]},
            exclude, limit * 2,
        )
        return [_rec(p, 0.6, "Based on your browsing history") for p in products]

    def _purchased_ids(self, user_id, limit=None):
        cur = self.db.orders.find({"user_id": user_id, "status": {"$ne": "Cancelled"}}).sort("created_at", DESCENDING)
        if limit:
            cur = cur.limit(limit)
        ids = []
        for o in cur:
            for it in o.get("items") or []:
                if it.get("product_id") and it["product_id"] not in ids:
                    ids.append(it["product_id"])
        return ids

    def _from_purchases(self, user_id, limit, exclude):
        bought = self._purchased_ids(user_id, limit=20)
        if not bought:
            return []
        categories, brands = set(), set()
        for p in self.db.products.find({"_internal_id": {"$in": bought}}, {"category_id": 1, "brand_id": 1}):
            if p.get("category_id"):
                categories.add(p["category_id"])
            if p.get("brand_id"):
                brands.add(p["brand_id"])
        products = self._products(
            {"$or": [{"category_id": {"$in": list(categories)}}, {"brand_id": {"$in": list(brands)}}]},
            exclude, limit,
        )
        return [_rec(p, 0.8, "Based on your purchase history") for p in products]

    def _collaborative(self, user_id, limit, exclude):
        mine = set(self._purchased_ids(user_id))
        if not mine:
            return []
        counts = {}
        for o in self.db.orders.find({
            "user_id": {"$ne": user_id},
            "items.product_id": {"$in": list(mine)},
            "status": {"$ne": "Cancelled"},
        }).limit(100):
            for it in o.get("items") or []:
                pid = it.get("product_id")
                if pid and pid not in mine and pid not in exclude:
                    counts[pid] = counts.get(pid, 0) + 1
        if not counts:
            return []
        top = [pid for pid, _ in sorted(counts.items(), key=lambda kv: kv[1], reverse=True)[:limit]]
        products = self._products({"_internal_id": {"$in": top}}, exclude)
        return [_rec(p, 0.7, "Users with similar preferences also bought") for p in products]

    def _from_categories(self, user_id, session_id, limit, exclude):
        counts = {}
        for b in self.db.user_behaviors.find(self._behavior_query(user_id, session_id), {"category_id": 1}):
            if b.get("category_id"):
                counts[b["category_id"]] = counts.get(b["category_id"], 0) + 1
        if not counts:
            return []
        top = [c for c, _ in sorted(counts.items(), key=lambda kv: kv[1], reverse=True)[:3]]
        products = self._products({"category_id": {"$in": top}}, exclude, limit,
                                  sort=[("rating", DESCENDING), ("reviews", DESCENDING)])
        return [_rec(p, 0.5, "Popular in your preferred categories") for p in products]

    def _from_pets(self, user_id, limit, exclude):
        pets = list(self.db.pets.find({"user_id": user_id, "is_active": {"$ne": False}}))
        if not pets:
            return []
        species = {str(p.get("species") or "other").lower() for p in pets}
        slugs = {s for sp in species for s in SPECIES_CATEGORIES.get(sp, [])}
        category_ids = [c["_internal_id"] for c in self.db.categories.find({"slug": {"$in": list(slugs)}})]
        ors = [{"tags": {"$in": [sp for sp in species if sp != "other"]}}]
        if category_ids:
            ors.append({"category_id": {"$in": category_ids}})
        products = self._products({"$or": ors}, exclude, limit)
        return [_rec(p, 0.8, "Recommended for your pets") for p in products]

    # ---------------- product pages ----------------
    def similar(self, product_id, limit=None, exclude=()):
        limit = limit or self.default_limit
        cached = None if exclude else self._cached(product_id, SIMILAR, limit)
        if cached:
            return cached[:limit]
        product = self.db.products.find_one({"_internal_id": product_id})
        if not product:
            return []

        skip = set(exclude) | {product_id}
        recs = []
        if product.get("category_id"):
            price = float(product.get("price") or 0)
            for p in self._products({"category_id": product["category_id"]}, skip, limit * 2):
                score = 0.5
                if product.get("brand_id") and p.get("brand_id") == product["brand_id"]:
                    score += 0.3
                if price > 0 and abs(float(p.get("price") or 0) - price) / price < 0.2:
                    score += 0.2
                if float(p.get("rating") or 0) > 4:
                    score += 0.1
                recs.append(_rec(p, score, "Similar category and features"))

        tags = product.get("tags") or []
        if tags:
            seen = skip | {r["product"]["_internal_id"] for r in recs}
            for p in self._products({"tags": {"$in": tags}}, seen, limit):
                common = len(set(tags) & set(p.get("tags") or []))
                recs.append(_rec(p, 0.3 + (common / len(tags)) * 0.4, "Similar features"))

        recs.sort(key=lambda r: r["score"], reverse=True)
        recs = recs[:limit]
        if not exclude:
            self._store(product_id, SIMILAR, recs, limit)
        return recs

    def frequently_bought_together(self, product_id, limit=6, exclude=()):
        cached = None if exclude else self._cached(product_id, BOUGHT_TOGETHER, limit)
        if cached:
            return cached[:limit]
        orders = list(self.db.orders.find(
            {"items.product_id": product_id, "status": {"$ne": "Cancelled"}}
        ).limit(1000))
        counts = {}
        for o in orders:
            for it in o.get("items") or []:
                pid = it.get("product_id")
                if pid and pid != product_id and pid not in exclude:
                    counts[pid] = counts.get(pid, 0) + 1
        if not counts:
            return self.similar(product_id, limit=limit, exclude=exclude)

        top = [pid for pid, _ in sorted(counts.items(), key=lambda kv: kv[1], reverse=True)[:limit]]
        recs = [
            _rec(p, min(counts[p["_internal_id"]] / len(orders), 1.0), "Frequently bought together")
            for p in self.db.products.find({"_internal_id": {"$in": top}, "is_active": True})
        ]
        recs.sort(key=lambda r: r["score"], reverse=True)
        if not exclude:
            self._store(product_id, BOUGHT_TOGETHER, recs, limit)
        return recs

    def trending(self, limit=None):
        limit = limit or self.default_limit
        cached = self._cached("global", TRENDING, limit)
        if cached:
            return cached[:limit]

        since = now_dt() - timedelta(days=TRENDING_DAYS)
        counts = {}
        for b in self.db.user_behaviors.find(
            {"behavior_type": {"$in": ["view", "click", "purchase"]}, "created_at": {"$gte": since}},
            {"product_id": 1, "behavior_type": 1},
        ):
            seen, bought = counts.get(b["product_id"], (0, 0))
            counts[b["product_id"]] = (seen + 1, bought + (b["behavior_type"] == "purchase"))
        if not counts:
            products = self.db.products.find({
                "is_active": True, "is_bestseller": True, "stock_quantity": {"$gt": 0},
            }).sort([("rating", DESCENDING), ("reviews", DESCENDING)]).limit(limit)
            return [_rec(p, 0.8, "Popular bestseller") for p in products]

        top = sorted(counts, key=lambda pid: counts[pid], reverse=True)[:limit * 2]
        recs = []
        for p in self._products({"_internal_id": {"$in": top}}):
            views, purchases = counts[p["_internal_id"]]
            recs.append(_rec(p, min((views * 0.3 + purchases * 0.7) / 100, 1.0), "Trending now"))
        recs.sort(key=lambda r: r["score"], reverse=True)
        recs = recs[:limit]
        self._store("global", TRENDING, recs, limit)
        return recs

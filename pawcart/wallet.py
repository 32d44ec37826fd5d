"""
Wallet balance, transactions and the reward layer (daily check-in,
one-off tasks, mini-games).

All earnings share one daily cap (MAX_DAILY_EARNING, counted per UTC day
from EARN transactions) and are scaled by the user's membership tier.
Functions take `at=` for the clock and `rng=` for the random source so
the reward rules can be exercised deterministically.
"""
import random
from datetime import timedelta

from pymongo import ReturnDocument, DESCENDING

from . import pricing
from .db import now_dt, new_id, day_bounds
from .errors import ShopError
from .logger import get_logger
from .settings import (
    TIERS, MAX_DAILY_EARNING, MAX_GAMES_PER_DAY, MIN_GAME_INTERVAL_SEC,
    DAILY_CHECKIN_REWARD, CHECKIN_STREAK_BONUS, TASK_REWARDS,
    FEED_PET_RANGE, MATCH_THREE_REWARDS, LUCKY_WHEEL_PRIZES,
    LUCKY_WHEEL_COOLDOWN_DAYS, QUIZ_REWARD_PER_CORRECT,
)

log = get_logger("wallet")

EARN, SPEND, REFUND, FREEZE, UNFREEZE = "EARN", "SPEND", "REFUND", "FREEZE", "UNFREEZE"
TRANSACTION_TYPES = (EARN, SPEND, REFUND, FREEZE, UNFREEZE)

FEED_PET, MATCH_THREE, LUCKY_WHEEL, QUIZ = "FEED_PET", "MATCH_THREE", "LUCKY_WHEEL", "QUIZ"
GAME_TYPES = (FEED_PET, MATCH_THREE, LUCKY_WHEEL, QUIZ)

# (balance, total_earned, total_spent, frozen_balance) deltas per unit amount
_EFFECTS = {
    EARN: (1, 1, 0, 0),
    SPEND: (-1, 0, 1, 0),
    REFUND: (1, 0, -1, 0),
    FREEZE: (-1, 0, 0, 1),
    UNFREEZE: (1, 0, 0, -1),
}


def _require_user(user_id):
    if not user_id:
        raise ShopError("user_id_required", "User ID is required")


def get_or_create_wallet(db, user_id):
    _require_user(user_id)
    now = now_dt()
    return db.wallets.find_one_and_update(
        {"user_id": user_id},
        {"$setOnInsert": {
            "_internal_id": new_id(),
            "user_id": user_id,
            "balance": 0.0,
            "total_earned": 0.0,
            "total_spent": 0.0,
            "frozen_balance": 0.0,
            "created_at": now,
        }},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def add_transaction(db, wallet, txn_type, source, amount, description=None, metadata=None, at=None):
    """Apply one transaction atomically and record it. Returns (transaction, wallet_after)."""
    if txn_type not in _EFFECTS:
        raise ShopError("bad_transaction_type", f"Unknown transaction type {txn_type}")
    amount = pricing.money(amount)
    if amount <= 0:
        raise ShopError("bad_amount", "Amount must be positive")

    d_bal, d_earned, d_spent, d_frozen = _EFFECTS[txn_type]
    q = {"_internal_id": wallet["_internal_id"]}
    if d_bal < 0:
        q["balance"] = {"$gte": amount}
    if d_frozen < 0:
        q["frozen_balance"] = {"$gte": amount}

    after = db.wallets.find_one_and_update(
        q,
        {"$inc": {
            "balance": d_bal * amount,
            "total_earned": d_earned * amount,
            "total_spent": d_spent * amount,
            "frozen_balance": d_frozen * amount,
        }, "$set": {"updated_at": now_dt()}},
        return_document=ReturnDocument.AFTER,
    )
    if not after:
        raise ShopError("insufficient_wallet_balance", "Insufficient wallet balance")

    balance_after = pricing.money(after["balance"])
    txn = {
        "_internal_id": new_id(),
        "wallet_id": wallet["_internal_id"],
        "user_id": wallet["user_id"],
        "type": txn_type,
        "source": source,
        "amount": amount,
        "balance_before": pricing.money(balance_after - d_bal * amount),
        "balance_after": balance_after,
        "description": description,
        "metadata": metadata or {},
        "created_at": at or now_dt(),
    }
    db.wallet_transactions.insert_one(txn)
    log.info("wallet %s %s %.2f (%s) -> %.2f", wallet["user_id"], txn_type, amount, source, balance_after)
    return txn, after


def user_tier(db, user_id, at=None):
    user = db.users.find_one({"_internal_id": user_id})
    return pricing.active_tier(user, at)


def multiplier(tier):
    return TIERS.get(tier, {}).get("multiplier", 1.0) if tier else 1.0


def daily_earning_remaining(db, user_id, at=None):
    start, end = day_bounds(at)
    earned = 0.0
    for t in db.wallet_transactions.find(
        {"user_id": user_id, "type": EARN, "created_at": {"$gte": start, "$lt": end}},
        {"amount": 1},
    ):
        earned += float(t.get("amount") or 0)
    return pricing.money(max(0.0, MAX_DAILY_EARNING - earned))


def _capped_reward(db, user_id, base, tier, at):
    remaining = daily_earning_remaining(db, user_id, at)
    if remaining <= 0:
        raise ShopError("daily_earning_limit", "Daily earning limit reached")
    return pricing.money(min(pricing.money(base * multiplier(tier)), remaining))


def wallet_summary(db, user_id, at=None):
    w = get_or_create_wallet(db, user_id)
    tier = user_tier(db, user_id, at)
    return {
        "wallet": w,
        "membership": tier,
        "limits": {
            "daily_earning_remaining": daily_earning_remaining(db, user_id, at),
            "max_daily_earning": MAX_DAILY_EARNING,
            "max_wallet_usage_percent": pricing.wallet_cap(tier),
        },
    }


def list_transactions(db, user_id, limit=50, offset=0):
    _require_user(user_id)
    limit = max(1, min(int(limit), 200))
    offset = max(0, int(offset))
    q = {"user_id": user_id}
    rows = list(db.wallet_transactions.find(q).sort("created_at", DESCENDING).skip(offset).limit(limit))
    total = db.wallet_transactions.count_documents(q)
    return rows, {"total": total, "limit": limit, "offset": offset, "has_more": offset + limit < total}


# -------------------------------------------------
# CHECK-IN + TASKS
# -------------------------------------------------
def check_in(db, user_id, at=None):
    _require_user(user_id)
    at = at or now_dt()
    start, end = day_bounds(at)
    if db.daily_checkins.find_one({"user_id": user_id, "check_in_date": {"$gte": start, "$lt": end}}):
        raise ShopError("already_checked_in", "Already checked in today")

    y_start, y_end = day_bounds(at, -1)
    yesterday = db.daily_checkins.find_one(
        {"user_id": user_id, "check_in_date": {"$gte": y_start, "$lt": y_end}}
    )
    streak = int(yesterday["consecutive_days"]) + 1 if yesterday else 1

    tier = user_tier(db, user_id, at)
    base = DAILY_CHECKIN_REWARD + TIERS.get(tier, {}).get("checkin_bonus", 0.0)
    bonus = CHECKIN_STREAK_BONUS.get(streak, 0.0)
    remaining = daily_earning_remaining(db, user_id, at)
    if remaining <= 0:
        raise ShopError("daily_earning_limit", "Daily earning limit reached")
    reward = pricing.money(min(base + bonus, remaining))

    record = {
        "_internal_id": new_id(),
        "user_id": user_id,
        "check_in_date": at,
        "consecutive_days": streak,
        "reward": reward,
        "bonus_reward": bonus,
    }
    db.daily_checkins.insert_one(record)

    w = get_or_create_wallet(db, user_id)
    if reward > 0:
        _, w = add_transaction(
            db, w, EARN, "DAILY_CHECKIN", reward,
            description=f"Daily check-in reward ({streak} consecutive days)",
            metadata={"consecutive_days": streak}, at=at,
        )
    return {"reward": reward, "consecutive_days": streak, "bonus_reward": bonus,
            "new_balance": pricing.money(w["balance"])}


def check_in_status(db, user_id, at=None):
    _require_user(user_id)
    start, end = day_bounds(at)
    today = db.daily_checkins.find_one({"user_id": user_id, "check_in_date": {"$gte": start, "$lt": end}})
    last = db.daily_checkins.find_one({"user_id": user_id}, sort=[("check_in_date", DESCENDING)])
    return {
        "checked_in_today": today is not None,
        "consecutive_days": int(last["consecutive_days"]) if last else 0,
        "last_check_in_date": last["check_in_date"] if last else None,
    }


def task_status(db, user_id):
    _require_user(user_id)
    done = list(db.user_tasks.find({"user_id": user_id, "completed": True}))
    return {
        "completed_tasks": {t["task_type"]: True for t in done},
        "task_list": [
            {"task_type": t["task_type"], "reward": t.get("reward"), "completed_at": t.get("completed_at")}
            for t in done
        ],
    }


def complete_task(db, user_id, task_type, at=None):
    _require_user(user_id)
    if task_type not in TASK_REWARDS:
        raise ShopError("invalid_task_type", "Invalid task type")
    if db.user_tasks.find_one({"user_id": user_id, "task_type": task_type, "completed": True}):
        raise ShopError("task_already_completed", "Task already completed")

    base = TASK_REWARDS[task_type]
    reward = _capped_reward(db, user_id, base, user_tier(db, user_id, at), at)
    task = {
        "_internal_id": new_id(),
        "user_id": user_id,
        "task_type": task_type,
        "completed": True,
        "reward": reward,
        "completed_at": at or now_dt(),
    }
    db.user_tasks.insert_one(task)
    _, w = add_transaction(
        db, get_or_create_wallet(db, user_id), EARN, f"TASK_{task_type}", reward,
        description=f"Task reward: {task_type}",
        metadata={"task_id": task["_internal_id"], "base_reward": base,
                  "membership_bonus": pricing.money(reward - base)}, at=at,
    )
    return {"task_type": task_type, "reward": reward, "base_reward": base,
            "membership_bonus": pricing.money(reward - base), "new_balance": pricing.money(w["balance"])}


# -------------------------------------------------
# GAMES
# -------------------------------------------------
def _games_today(db, user_id, at):
    start, end = day_bounds(at)
    return list(db.game_records.find({"user_id": user_id, "played_at": {"$gte": start, "$lt": end}}))


def _record_game(db, user_id, game_type, score, reward, at, tier, **metadata):
    rec = {
        "_internal_id": new_id(),
        "user_id": user_id,
        "game_type": game_type,
        "score": score,
        "reward": reward,
        "metadata": dict(metadata, membership=tier),
        "played_at": at,
    }
    db.game_records.insert_one(rec)
    _, w = add_transaction(
        db, get_or_create_wallet(db, user_id), EARN, f"GAME_{game_type}", reward,
        description=f"{game_type.replace('_', ' ').title()} reward",
        metadata={"game_id": rec["_internal_id"], "score": score}, at=at,
    )
    return {"game_type": game_type, "score": score, "reward": reward,
            "new_balance": pricing.money(w["balance"]), "game_id": rec["_internal_id"]}


def _check_daily_games(db, user_id, at):
    if len(_games_today(db, user_id, at)) >= MAX_GAMES_PER_DAY:
        raise ShopError("daily_game_limit", "Daily game limit reached")


def play_feed_pet(db, user_id, at=None, rng=None):
    _require_user(user_id)
    at = at or now_dt()
    rng = rng or random
    _check_daily_games(db, user_id, at)

    last = db.game_records.find_one({"user_id": user_id}, sort=[("played_at", DESCENDING)])
    if last:
        elapsed = (at - last["played_at"]).total_seconds()
        if elapsed < MIN_GAME_INTERVAL_SEC:
            raise ShopError("play_too_soon", "Please wait before playing again",
                            wait_time=int(MIN_GAME_INTERVAL_SEC - elapsed + 0.999))

    low, high = FEED_PET_RANGE
    base = rng.uniform(low, high)
    tier = user_tier(db, user_id, at)
    reward = _capped_reward(db, user_id, base, tier, at)
    return _record_game(db, user_id, FEED_PET, 1, reward, at, tier)


def match_three_reward(score):
    for threshold, reward in MATCH_THREE_REWARDS:
        if score >= threshold:
            return reward
    return 0.0


def play_match_three(db, user_id, score, at=None):
    _require_user(user_id)
    try:
        score = int(score)
    except (TypeError, ValueError):
        raise ShopError("bad_score", "Score must be a number")
    at = at or now_dt()
    _check_daily_games(db, user_id, at)

    base = match_three_reward(score)
    if base <= 0:
        raise ShopError("score_too_low", "Score too low for reward")
    tier = user_tier(db, user_id, at)
    reward = _capped_reward(db, user_id, base, tier, at)
    return _record_game(db, user_id, MATCH_THREE, score, reward, at, tier)


def play_lucky_wheel(db, user_id, at=None, rng=None):
    _require_user(user_id)
    at = at or now_dt()
    rng = rng or random
    since = at - timedelta(days=LUCKY_WHEEL_COOLDOWN_DAYS)
    recent = db.game_records.find_one(
        {"user_id": user_id, "game_type": LUCKY_WHEEL, "played_at": {"$gte": since}},
        sort=[("played_at", DESCENDING)],
    )
    if recent:
        raise ShopError("lucky_wheel_cooldown", "Lucky wheel available once per week",
                        next_available=(recent["played_at"] + timedelta(days=LUCKY_WHEEL_COOLDOWN_DAYS)).isoformat() + "Z")

    position = rng.randrange(len(LUCKY_WHEEL_PRIZES))
    tier = user_tier(db, user_id, at)
    reward = _capped_reward(db, user_id, LUCKY_WHEEL_PRIZES[position], tier, at)
    out = _record_game(db, user_id, LUCKY_WHEEL, position, reward, at, tier, wheel_position=position)
    out["wheel_position"] = position
    return out


def play_quiz(db, user_id, correct_answers, total_questions, at=None):
    _require_user(user_id)
    if not isinstance(correct_answers, int) or not isinstance(total_questions, int):
        raise ShopError("bad_request", "Invalid request data")
    if correct_answers < 0 or correct_answers > total_questions:
        raise ShopError("bad_request", "Invalid request data")
    at = at or now_dt()
    start, end = day_bounds(at)
    if db.game_records.find_one({"user_id": user_id, "game_type": QUIZ, "played_at": {"$gte": start, "$lt": end}}):
        raise ShopError("quiz_already_played", "Quiz available once per day")

    base = correct_answers * QUIZ_REWARD_PER_CORRECT
    if base <= 0:
        raise ShopError("no_reward", "No correct answers, no reward")
    tier = user_tier(db, user_id, at)
    reward = _capped_reward(db, user_id, base, tier, at)
    return _record_game(db, user_id, QUIZ, correct_answers, reward, at, tier,
                        total_questions=total_questions, correct_answers=correct_answers)


def daily_game_status(db, user_id, at=None):
    _require_user(user_id)
    games = _games_today(db, user_id, at)
    by_type = {g: 0 for g in GAME_TYPES}
    for g in games:
        by_type[g["game_type"]] = by_type.get(g["game_type"], 0) + 1
    return {
        "games_by_type": by_type,
        "total_games_today": len(games),
        "max_games_per_day": MAX_GAMES_PER_DAY,
        "can_play_more": len(games) < MAX_GAMES_PER_DAY,
    }


def leaderboard(db, game_type=None, limit=10):
    if game_type and game_type not in GAME_TYPES:
        raise ShopError("invalid_game_type", "Invalid game type")
    pipe = []
    if game_type:
        pipe.append({"$match": {"game_type": game_type}})
    pipe += [
        {"$group": {
            "_id": "$user_id",
            "total_score": {"$sum": "$score"},
            "total_reward": {"$sum": "$reward"},
            "games_played": {"$sum": 1},
            "best_score": {"$max": "$score"},
        }},
        {"$sort": {"total_score": -1}},
        {"$limit": max(1, min(int(limit), 100))},
    ]
    out = []
    for row in db.game_records.aggregate(pipe):
        user = db.users.find_one({"_internal_id": row["_id"]}, {"username": 1, "membership": 1}) or {}
        out.append({
            "user_id": row["_id"],
            "username": user.get("username") or "Anonymous",
            "membership": pricing.active_tier(user),
            "total_score": row["total_score"],
            "total_reward": pricing.money(row["total_reward"]),
            "games_played": row["games_played"],
            "best_score": row["best_score"],
        })
    return out

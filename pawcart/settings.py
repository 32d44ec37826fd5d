# settings.py - PawCart config (env + business constants)

import os

# -------------------------------------------------
# ENV
# -------------------------------------------------
MONGO_URI = os.environ.get("MONGO_URI", "mongodb://localhost:27017/pawcart")
DB_NAME = os.environ.get("MONGO_DB", "pawcart")

# Admin secret for privileged endpoints (used by admin panel)
ADMIN_SECRET = os.environ.get("ADMIN_SECRET", "changeme-admin")
# Accept admin PIN via body/query too (so the web admin panel can pass it)
ALLOW_PIN_PARAM = os.environ.get("ALLOW_PIN_PARAM", "true").lower() == "true"

ENSURE_INDEXES_ON_START = os.environ.get("ENSURE_INDEXES_ON_START", "true").lower() == "true"
AUTO_SEED_COUPONS_ON_START = os.environ.get("AUTO_SEED_COUPONS_ON_START", "false").lower() == "true"

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

CURRENCY_SYMBOL = os.environ.get("CURRENCY_SYMBOL", "HK$")

# -------------------------------------------------
# PRICING
# -------------------------------------------------
BASE_SHIPPING_FEE = float(os.environ.get("BASE_SHIPPING_FEE", "5.99"))
FREE_SHIPPING_THRESHOLD = float(os.environ.get("FREE_SHIPPING_THRESHOLD", "100"))

# Membership tiers: discount rate, monthly price, reward multiplier,
# check-in bonus and the share of an order the wallet may pay for.
TIERS = {
    "Silver Paw":  {"rate": 0.05, "price": 29.0, "multiplier": 1.2, "checkin_bonus": 0.5, "wallet_cap": 0.4},
    "Golden Paw":  {"rate": 0.10, "price": 59.0, "multiplier": 1.5, "checkin_bonus": 1.0, "wallet_cap": 0.5},
    "Diamond Paw": {"rate": 0.15, "price": 99.0, "multiplier": 2.0, "checkin_bonus": 2.0, "wallet_cap": 0.7},
}
DEFAULT_WALLET_CAP = 0.3

MEMBERSHIP_PERIOD_DAYS = int(os.environ.get("MEMBERSHIP_PERIOD_DAYS", "30"))
MEMBERSHIP_RENEWAL_DAYS = int(os.environ.get("MEMBERSHIP_RENEWAL_DAYS", "365"))
MEMBERSHIP_EXPIRY_NOTICE_DAYS = int(os.environ.get("MEMBERSHIP_EXPIRY_NOTICE_DAYS", "7"))

# -------------------------------------------------
# WALLET / REWARDS
# -------------------------------------------------
DAILY_CHECKIN_REWARD = 1.0
CHECKIN_STREAK_BONUS = {7: 5.0, 30: 30.0}

FEED_PET_RANGE = (0.5, 2.0)
MATCH_THREE_REWARDS = [(5000, 10.0), (3000, 5.0), (2000, 3.0), (1000, 1.0)]  # highest first
LUCKY_WHEEL_PRIZES = [1, 2, 3, 5, 10, 20, 50]
QUIZ_REWARD_PER_CORRECT = 1.0

TASK_REWARDS = {
    "REVIEW_ORDER": 3.0,
    "PHOTO_REVIEW": 5.0,
    "SHARE_PRODUCT": 0.5,
    "REFER_FRIEND": 20.0,
}

MAX_DAILY_EARNING = 50.0
MAX_GAMES_PER_DAY = 10
MIN_GAME_INTERVAL_SEC = 60
LUCKY_WHEEL_COOLDOWN_DAYS = 7

FREE_DELIVERY_REDEEM_COST = float(os.environ.get("FREE_DELIVERY_REDEEM_COST", "10"))
FREE_DELIVERY_VALID_DAYS = 90

# -------------------------------------------------
# RECOMMENDATIONS
# -------------------------------------------------
RECOMMENDATION_CACHE_MINUTES = int(os.environ.get("RECOMMENDATION_CACHE_MINUTES", "30"))
RECOMMENDATION_DEFAULT_LIMIT = 12

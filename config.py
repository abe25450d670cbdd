import os
from dotenv import load_dotenv

# Use .env as source of truth even if process env already has stale values.
load_dotenv(override=True)


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _csv_values(raw: str) -> list[str]:
    return [x.strip() for x in str(raw or "").split(",") if x.strip()]


# =========================================================
# TELEGRAM
# =========================================================

TELEGRAM_TOKEN = os.getenv("TELEGRAM_TOKEN", "").strip()
# Channel that receives milestone / dump alerts.
TELEGRAM_CHAT_ID = os.getenv("TELEGRAM_CHAT_ID", "").strip()
TELEGRAM_TIMEOUT_SECONDS = float(os.getenv("TELEGRAM_TIMEOUT_SECONDS", "10"))

# =========================================================
# PRICE SOURCES
# =========================================================

DEXSCREENER_API_URL = os.getenv("DEXSCREENER_API_URL", "https://api.dexscreener.com").strip()
JUPITER_PRICE_URL = os.getenv("JUPITER_PRICE_URL", "https://lite-api.jup.ag/price/v3").strip()
PRICE_TIMEOUT_SECONDS = float(os.getenv("PRICE_TIMEOUT_SECONDS", "10"))
# Circulating supply assumed when a source gives a price but no market cap.
ASSUMED_SUPPLY = float(os.getenv("ASSUMED_SUPPLY", "1000000000"))

# =========================================================
# TRACKING / POLLING
# =========================================================

CHECK_INTERVAL_MINUTES = float(os.getenv("CHECK_INTERVAL_MINUTES", "1"))
BASE_TRACK_DAYS = float(os.getenv("BASE_TRACK_DAYS", "7"))
POLL_BATCH_SIZE = int(os.getenv("POLL_BATCH_SIZE", "200"))
POLL_MAX_WORKERS = int(os.getenv("POLL_MAX_WORKERS", "4"))

# Low-tier milestones (<10x)
MILESTONES = os.getenv("MILESTONES", "2,3,4,5,6,7,8")
# High-tier sweep (>=10x): 10=10x,20x,... | 1=10x,11x,...
HIGH_START = float(os.getenv("HIGH_START", "10"))
HIGH_STEP = float(os.getenv("HIGH_STEP", "10"))
HIGH_MAX = float(os.getenv("HIGH_MAX", "5000"))
# Fraction of the threshold a multiple may fall short and still count (0.01 = 1%).
MILESTONE_TOLERANCE = float(os.getenv("MILESTONE_TOLERANCE", "0"))
COALESCE_MILESTONES = _env_bool("COALESCE_MILESTONES", default=False)

# 0 disables the dump alert.
DUMP_ALERT_DRAWDOWN = float(os.getenv("DUMP_ALERT_DRAWDOWN", "0.5"))

# Liquidity floor for milestone alerts (anti-MEV); 0 disables the gate.
MIN_LP_USD = float(os.getenv("MIN_LP_USD", "0"))

# Keep strong pumps tracked longer: a milestone >= EXTEND_AT_MULTIPLE pushes
# expiry out to now + EXTEND_DAYS. 0 disables.
EXTEND_AT_MULTIPLE = float(os.getenv("EXTEND_AT_MULTIPLE", "0"))
EXTEND_DAYS = float(os.getenv("EXTEND_DAYS", "7"))

# =========================================================
# SUBMISSIONS
# =========================================================

COOLDOWN_WINDOW_HOURS = float(os.getenv("COOLDOWN_WINDOW_HOURS", "24"))
ADMIN_IDS = set(_csv_values(os.getenv("ADMIN_IDS", "")))
PREMIUM_DEFAULT_CALLS_PER_DAY = int(os.getenv("PREMIUM_DEFAULT_CALLS_PER_DAY", "4"))

# =========================================================
# STORAGE / API / LOGGING
# =========================================================

DB_PATH = os.getenv("DB_PATH", "").strip() or None
INTERNAL_API_SECRET = os.getenv("INTERNAL_API_SECRET", "").strip()
RUN_SCHEDULER_IN_API = _env_bool("RUN_SCHEDULER_IN_API", default=False)
LOG_JSON_ENABLED = _env_bool("LOG_JSON_ENABLED", default=True)
LOG_JSON_PATH = os.getenv("LOG_JSON_PATH", "logs/callwatch.jsonl")
LOG_MAX_BYTES = int(os.getenv("LOG_MAX_BYTES", "5242880"))
LOG_BACKUP_COUNT = int(os.getenv("LOG_BACKUP_COUNT", "5"))


def tracker_settings():
    """Validated engine options assembled from the values above."""
    from tracking.milestones import build_high_ladder, parse_ladder
    from tracking.models import TrackerSettings

    return TrackerSettings(
        poll_interval_minutes=CHECK_INTERVAL_MINUTES,
        low_milestone_ladder=parse_ladder(MILESTONES, low=1, high=10),
        high_milestone_ladder=build_high_ladder(HIGH_START, HIGH_STEP, HIGH_MAX),
        drawdown_fraction=DUMP_ALERT_DRAWDOWN,
        base_track_days=BASE_TRACK_DAYS,
        cooldown_window_hours=COOLDOWN_WINDOW_HOURS,
        batch_size=POLL_BATCH_SIZE,
        max_workers=POLL_MAX_WORKERS,
        privileged_caller_ids=ADMIN_IDS,
        milestone_tolerance=MILESTONE_TOLERANCE,
        min_liquidity_usd=MIN_LP_USD,
        coalesce_milestones=COALESCE_MILESTONES,
        extend_at_multiple=EXTEND_AT_MULTIPLE,
        extend_days=EXTEND_DAYS,
    )

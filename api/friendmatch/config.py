import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_default_migrations = Path(__file__).resolve().parents[1] / "migrations"
MIGRATIONS_DIR = Path(os.getenv("MIGRATIONS_DIR", str(_default_migrations)))
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "")
CRON_SECRET = os.getenv("CRON_SECRET", "")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

MATCH_TIMEZONE = os.getenv("MATCH_TIMEZONE", "UTC")
MATCH_RADIUS_KM = float(os.getenv("MATCH_RADIUS_KM", "50"))
MATCH_AGE_MIN = int(os.getenv("MATCH_AGE_MIN", "18"))
MATCH_AGE_MAX = int(os.getenv("MATCH_AGE_MAX", "100"))
MATCH_QUOTA = int(os.getenv("MATCH_QUOTA", "2"))

DIVERSITY_PENALTY = float(os.getenv("DIVERSITY_PENALTY", "0.30"))
DIVERSITY_LOOKBACK_CYCLES = int(os.getenv("DIVERSITY_LOOKBACK_CYCLES", "4"))
EXCLUSION_LOOKBACK_CYCLES = int(os.getenv("EXCLUSION_LOOKBACK_CYCLES", "1"))

MATCH_BATCH_SIZE = int(os.getenv("MATCH_BATCH_SIZE", "10"))
MATCH_BATCH_DELAY_MS = int(os.getenv("MATCH_BATCH_DELAY_MS", "100"))
MATCH_RUN_TIMEOUT_SECONDS = float(os.getenv("MATCH_RUN_TIMEOUT_SECONDS", "0"))

DEFAULT_SCORING_CONFIG: dict[str, Any] = {
    "INTEREST_W": float(os.getenv("INTEREST_W", "0.6")),
    "PROXIMITY_W": float(os.getenv("PROXIMITY_W", "0.3")),
    "ACTIVITY_W": float(os.getenv("ACTIVITY_W", "0.1")),
    "RANK_GAP_SCALE": float(os.getenv("RANK_GAP_SCALE", "10")),
    "SHARED_BONUS_STEP": float(os.getenv("SHARED_BONUS_STEP", "0.05")),
    "SHARED_BONUS_CAP": float(os.getenv("SHARED_BONUS_CAP", "0.2")),
}

if os.getenv("MATCHING_CONFIG_JSON"):
    try:
        DEFAULT_SCORING_CONFIG.update(json.loads(os.getenv("MATCHING_CONFIG_JSON", "{}")))
    except json.JSONDecodeError:
        logger.warning("MATCHING_CONFIG_JSON is not valid JSON; using default scoring weights")

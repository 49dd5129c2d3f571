import logging
import os
from pathlib import Path
from typing import List

logger = logging.getLogger(__name__)


def env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %s", name, raw, default)
        return default
    if value < minimum:
        logger.warning("Ignoring out-of-range %s=%r, using %s", name, raw, default)
        return default
    return value


def env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def parse_csv_env(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


DEFAULT_DB_PATH = str(Path(__file__).resolve().parents[1] / "data" / "dispatch.sqlite3")

DB_PATH = os.getenv("DISPATCH_DB_PATH", DEFAULT_DB_PATH)
DB_TIMEOUT_SECONDS = env_int("DISPATCH_DB_TIMEOUT_SECONDS", 5, minimum=1)
PROPOSAL_TIMEOUT_MINUTES = env_int("PROPOSAL_TIMEOUT_MINUTES", 30, minimum=1)
MATCHER_IDLE_CAP_HOURS = env_int("MATCHER_IDLE_CAP_HOURS", 72, minimum=1)
ACTIVITY_FEED_LIMIT = env_int("ACTIVITY_FEED_LIMIT", 500, minimum=1)
SEED_CATALOG = env_bool("SEED_CATALOG", True)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

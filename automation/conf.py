# automation/conf.py
from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %d", name, raw, default)
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


# ----------------------------------------------------------------------
# Paths (all under assets/)
# ----------------------------------------------------------------------
ROOT_DIR = Path(__file__).parent.parent
ASSETS_DIR = ROOT_DIR / "assets"

DEFAULT_DB_PATH = ASSETS_DIR / "automation.db"
DATABASE_URL = os.getenv("DATABASE_URL") or f"sqlite:///{DEFAULT_DB_PATH}"

# ----------------------------------------------------------------------
# Sweeper
# ----------------------------------------------------------------------
SWEEP_INTERVAL_SECONDS = _env_int("SWEEP_INTERVAL_SECONDS", 300)
SWEEP_BATCH_SIZE = _env_int("SWEEP_BATCH_SIZE", 200)

# ----------------------------------------------------------------------
# Rule engine
# ----------------------------------------------------------------------
PERSIST_SKIPPED_EXECUTIONS = _env_bool("PERSIST_SKIPPED_EXECUTIONS", True)
MAX_EVENT_CASCADE_DEPTH = _env_int("MAX_EVENT_CASCADE_DEPTH", 3)
DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "UTC")

# Lead score bounds enforced by score deltas
SCORE_MIN = 0
SCORE_MAX = 100

# ----------------------------------------------------------------------
# Lead scoring (engagement score with time decay, separate from entity score)
# ----------------------------------------------------------------------
LEAD_SCORE_DECAY_RATE = 0.10
LEAD_SCORE_DECAY_PERIOD_DAYS = 30

# ----------------------------------------------------------------------
# Send suppression
# ----------------------------------------------------------------------
FREQUENCY_CAP_MAX = _env_int("FREQUENCY_CAP_MAX", 5)
FREQUENCY_CAP_WINDOW_DAYS = _env_int("FREQUENCY_CAP_WINDOW_DAYS", 7)
DOMAIN_THROTTLE_MAX = _env_int("DOMAIN_THROTTLE_MAX", 50)
DOMAIN_THROTTLE_WINDOW_MINUTES = _env_int("DOMAIN_THROTTLE_WINDOW_MINUTES", 60)

# ----------------------------------------------------------------------
# Workflow interpreter
# ----------------------------------------------------------------------
WAIT_EVENT_TIMEOUT_DAYS = _env_int("WAIT_EVENT_TIMEOUT_DAYS", 90)
MAX_IMMEDIATE_STEPS = _env_int("MAX_IMMEDIATE_STEPS", 50)

# ----------------------------------------------------------------------
# Notifications
# ----------------------------------------------------------------------
NOTIFICATION_WEBHOOK_URL = os.getenv("NOTIFICATION_WEBHOOK_URL") or None
NOTIFICATION_TIMEOUT_SECONDS = 10


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(message)s")

    logger.info("CRM automation – effective configuration")
    logger.info("Database          : %s", DATABASE_URL)
    logger.info("Sweep interval    : %ss (batch %d)", SWEEP_INTERVAL_SECONDS, SWEEP_BATCH_SIZE)
    logger.info("Wait timeout      : %d days", WAIT_EVENT_TIMEOUT_DAYS)
    logger.info("Persist skipped   : %s", PERSIST_SKIPPED_EXECUTIONS)
    logger.info("Webhook           : %s", NOTIFICATION_WEBHOOK_URL or "disabled")

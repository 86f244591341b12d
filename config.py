import json
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env early so os.getenv picks up local dev secrets.
_DOTENV_PATHS = [Path.cwd() / ".env", Path(__file__).resolve().parent / ".env"]
for _env_path in _DOTENV_PATHS:
    if _env_path.exists():
        load_dotenv(dotenv_path=_env_path, override=False)

APP_NAME = "WB Seller Sync"
APP_VERSION = "1.0.0"

LOGGER = logging.getLogger(__name__)


# ----------------------------
# Helpers
# ----------------------------
def _req(name: str) -> str:
    v = os.getenv(name)
    if not v:
        raise RuntimeError(f"Missing required env var: {name}")
    return v


def _csv_list(name: str, default: str = "") -> list[str]:
    raw = (os.getenv(name) or default).strip()
    if not raw:
        return []
    return [x.strip() for x in raw.split(",") if x.strip()]


def _int_env(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        LOGGER.warning("[config] Invalid int for %s=%r; using %s", name, raw, default)
        return default


def _float_env(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        LOGGER.warning("[config] Invalid float for %s=%r; using %s", name, raw, default)
        return default


# ----------------------------
# Credentials (env only, resolved lazily so tests never need a key)
# ----------------------------
def get_api_key() -> str:
    return _req("WB_API_KEY")


# ----------------------------
# Storage
# ----------------------------
SYNC_DB_PATH = Path(os.getenv("WB_SYNC_DB_PATH") or (Path(__file__).resolve().parent / "wb_sync.db"))

# ----------------------------
# Upstream hosts
# ----------------------------
STATISTICS_API_URL = os.getenv("WB_STATISTICS_API_URL", "https://statistics-api.wildberries.ru")
ADVERT_API_URL = os.getenv("WB_ADVERT_API_URL", "https://advert-api.wildberries.ru")
ANALYTICS_API_URL = os.getenv("WB_ANALYTICS_API_URL", "https://seller-analytics-api.wildberries.ru")
SUPPLIES_API_URL = os.getenv("WB_SUPPLIES_API_URL", "https://supplies-api.wildberries.ru")
CONTENT_API_URL = os.getenv("WB_CONTENT_API_URL", "https://content-api.wildberries.ru")

HTTP_TIMEOUT_SECONDS = _float_env("WB_HTTP_TIMEOUT_SECONDS", 60.0)

# ----------------------------
# Sync tuning
# ----------------------------
# Earliest week the finance report stream serves (a Monday).
BACKFILL_LOWER_BOUND = os.getenv("WB_BACKFILL_LOWER_BOUND", "2024-01-29")

REPORT_POLL_INTERVAL_SECONDS = _float_env("WB_REPORT_POLL_INTERVAL_SECONDS", 2.0)
TASK_RATE_LIMIT_RETRY_SECONDS = _float_env("WB_TASK_RATE_LIMIT_RETRY_SECONDS", 10.0)
REPORT_RATE_LIMIT_RETRY_SECONDS = _float_env("WB_REPORT_RATE_LIMIT_RETRY_SECONDS", 61.0)
ORDERS_RATE_LIMIT_SECONDS = _float_env("WB_ORDERS_RATE_LIMIT_SECONDS", 21.0)

STORAGE_REPORT_TIMEOUT_SECONDS = _float_env("WB_STORAGE_REPORT_TIMEOUT_SECONDS", 300.0)
ACCEPTANCE_REPORT_TIMEOUT_SECONDS = _float_env("WB_ACCEPTANCE_REPORT_TIMEOUT_SECONDS", 300.0)
STOCKS_REPORT_TIMEOUT_SECONDS = _float_env("WB_STOCKS_REPORT_TIMEOUT_SECONDS", 120.0)

PRIORITY_WAVE_CONCURRENCY = _int_env("WB_PRIORITY_WAVE_CONCURRENCY", 4)
MAX_CATCHUP_RUNS_PER_TICK = _int_env("WB_MAX_CATCHUP_RUNS_PER_TICK", 3)

WEEK_SYNC_MAX_ATTEMPTS = _int_env("WB_WEEK_SYNC_MAX_ATTEMPTS", 5)
WEEK_SYNC_INITIAL_DELAY_SECONDS = _float_env("WB_WEEK_SYNC_INITIAL_DELAY_SECONDS", 1.5)
WEEK_SYNC_MAX_DELAY_SECONDS = _float_env("WB_WEEK_SYNC_MAX_DELAY_SECONDS", 15.0)
WEEK_SYNC_RANGE_DELAY_SECONDS = _float_env("WB_WEEK_SYNC_RANGE_DELAY_SECONDS", 1.0)

# Empty means "every dataset", snapshots included.
PRIORITY_DATASETS = _csv_list("WB_PRIORITY_DATASETS")

POLICY_OVERRIDES_PATH = (os.getenv("WB_POLICY_OVERRIDES_PATH") or "").strip()

LOG_LEVEL = (os.getenv("LOG_LEVEL") or "INFO").upper()
# Empty disables the rotating log file.
LOG_FILE_PATH = (os.getenv("WB_LOG_FILE") or "").strip() or None


def load_policy_overrides() -> dict:
    """Read the optional ``{dataset: {field: value}}`` JSON override file."""
    if not POLICY_OVERRIDES_PATH:
        return {}
    path = Path(POLICY_OVERRIDES_PATH)
    if not path.exists():
        LOGGER.warning("[config] Policy override file %s not found; using defaults", path)
        return {}
    with path.open("r", encoding="utf-8") as fh:
        data = json.load(fh)
    if not isinstance(data, dict):
        raise ValueError(f"Policy override file {path} must contain a JSON object")
    return data

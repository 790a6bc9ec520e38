import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parents[1]

load_dotenv(dotenv_path=BASE_DIR / ".env", override=False)


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_int(value: str | None, fallback: int, *, minimum: int = 0) -> int:
    if value is None or not value.strip():
        return fallback
    try:
        return max(minimum, int(value.strip()))
    except ValueError:
        return fallback


def _parse_float(value: str | None, fallback: float) -> float:
    if value is None or not value.strip():
        return fallback
    try:
        return max(0.0, float(value.strip()))
    except ValueError:
        return fallback


DB_PATH = Path(os.getenv("PUNCTOO_DB_PATH", BASE_DIR / "database" / "punctoo.db"))
LOCK_TIMEOUT_SECONDS = _parse_float(os.getenv("PUNCTOO_LOCK_TIMEOUT_SECONDS"), 5.0)
LOG_LEVEL = (os.getenv("PUNCTOO_LOG_LEVEL") or "INFO").strip().upper() or "INFO"
API_PREFIX = (os.getenv("PUNCTOO_API_PREFIX") or "/api/punctoo").strip().rstrip("/") or "/api/punctoo"

CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("PUNCTOO_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("PUNCTOO_CORS_ALLOW_METHODS"),
    ["GET", "POST", "PUT", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("PUNCTOO_CORS_ALLOW_HEADERS"),
    ["Content-Type", "Accept", "User-Agent"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("PUNCTOO_CORS_ALLOW_CREDENTIALS"), True)

# Scan rules
DOUBLE_TAP_WINDOW_SECONDS = _parse_int(os.getenv("PUNCTOO_DOUBLE_TAP_WINDOW_SECONDS"), 10)
COOLDOWN_AFTER_OUT_MINUTES = _parse_int(os.getenv("PUNCTOO_COOLDOWN_AFTER_OUT_MINUTES"), 60)
AUTO_FIX_IN_OFFSET_MS = 1

HISTORY_DEFAULT_LIMIT = _parse_int(os.getenv("PUNCTOO_HISTORY_DEFAULT_LIMIT"), 50, minimum=1)
HISTORY_MAX_LIMIT = _parse_int(os.getenv("PUNCTOO_HISTORY_MAX_LIMIT"), 200, minimum=1)

REFERENCE_MIN_MINUTES = 1
REFERENCE_MAX_MINUTES = 1440

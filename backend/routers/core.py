import logging
import sqlite3

from fastapi import APIRouter, HTTPException

from backend.config import (
    AUTO_FIX_IN_OFFSET_MS,
    COOLDOWN_AFTER_OUT_MINUTES,
    DOUBLE_TAP_WINDOW_SECONDS,
    HISTORY_DEFAULT_LIMIT,
    HISTORY_MAX_LIMIT,
    REFERENCE_MAX_MINUTES,
    REFERENCE_MIN_MINUTES,
)
from database.db import ping_db

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/db-check")
def db_check():
    try:
        now = ping_db()
    except sqlite3.Error as exc:
        logger.exception("Database check failed")
        raise HTTPException(status_code=500, detail=f"Database error: {exc}")
    return {"ok": True, "db": "connected", "now": now}


@router.get("/config/scan-rules")
def scan_rules_config():
    return {
        "double_tap_window_seconds": DOUBLE_TAP_WINDOW_SECONDS,
        "cooldown_after_out_minutes": COOLDOWN_AFTER_OUT_MINUTES,
        "auto_fix_in_offset_ms": AUTO_FIX_IN_OFFSET_MS,
        "history_default_limit": HISTORY_DEFAULT_LIMIT,
        "history_max_limit": HISTORY_MAX_LIMIT,
        "reference_min_minutes": REFERENCE_MIN_MINUTES,
        "reference_max_minutes": REFERENCE_MAX_MINUTES,
    }

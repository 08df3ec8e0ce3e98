# backend/opscore/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw not in (None, "") else default


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/opscore.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///opscore.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Storage gateway: attempts, backoff base (seconds), per-attempt timeout (seconds).
    # A timeout of 0 runs each attempt inline on the calling thread.
    STORAGE_MAX_ATTEMPTS = _env_int("STORAGE_MAX_ATTEMPTS", 3)
    STORAGE_RETRY_BASE_DELAY = _env_float("STORAGE_RETRY_BASE_DELAY", 1.0)
    STORAGE_TIMEOUT_SECONDS = _env_float("STORAGE_TIMEOUT_SECONDS", 10.0)

    # Caller identity is resolved upstream; we only read the user id it forwards.
    ACTOR_HEADER = os.environ.get("ACTOR_HEADER", "X-Actor-Id")

    LOW_STOCK_FALLBACK_THRESHOLD = _env_float("LOW_STOCK_FALLBACK_THRESHOLD", 5)
    DEFAULT_PAYMENT_TERMS_DAYS = _env_int("DEFAULT_PAYMENT_TERMS_DAYS", 30)

    ROLE_CHANGE_LIMIT = _env_int("ROLE_CHANGE_LIMIT", 3)
    ROLE_CHANGE_WINDOW_HOURS = _env_int("ROLE_CHANGE_WINDOW_HOURS", 24)
    AUDIT_LOG_PAGE_SIZE = _env_int("AUDIT_LOG_PAGE_SIZE", 20)

    # {"orphaned_production_batch": {"threshold": 5}, ...}
    INTEGRITY_ALERT_OVERRIDES: dict = {}

    OUTBOX_MAX_ATTEMPTS = _env_int("OUTBOX_MAX_ATTEMPTS", 5)
    OUTBOX_RETRY_BASE_SECONDS = _env_int("OUTBOX_RETRY_BASE_SECONDS", 60)

    LOGIN_MAX_FAILED_ATTEMPTS = _env_int("LOGIN_MAX_FAILED_ATTEMPTS", 10)
    LOGIN_LOCKOUT_WINDOW_MINUTES = _env_int("LOGIN_LOCKOUT_WINDOW_MINUTES", 15)
    LOGIN_LOCKOUT_DURATION_MINUTES = _env_int("LOGIN_LOCKOUT_DURATION_MINUTES", 15)

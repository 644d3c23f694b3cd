# backend/marketcore/config.py
from __future__ import annotations
import os


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _list_env(name: str) -> list[str]:
    raw = os.environ.get(name) or ""
    return [item.strip() for item in raw.split(",") if item.strip()]


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/marketcore.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///marketcore.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Shared secret for the /api/cron endpoints. Unset = cron endpoints disabled.
    CRON_SECRET = os.environ.get("CRON_SECRET")

    # HMAC-SHA256 key for processor callbacks. Unset = every callback refused (config_error).
    PAYMENT_WEBHOOK_SECRET = os.environ.get("PAYMENT_WEBHOOK_SECRET")
    WEBHOOK_MAX_AGE_SECONDS = _int_env("WEBHOOK_MAX_AGE_SECONDS", 300)
    WEBHOOK_RETENTION_DAYS = _int_env("WEBHOOK_RETENTION_DAYS", 30)
    WEBHOOK_CLEANUP_BATCH_SIZE = _int_env("WEBHOOK_CLEANUP_BATCH_SIZE", 500)

    # Processor source addresses, comma separated. Empty = any source accepted.
    WEBHOOK_ALLOWED_IPS = _list_env("WEBHOOK_ALLOWED_IPS")

    # Requests per minute; 0 disables the limit
    RATE_LIMIT_WEBHOOK_PER_MINUTE = _int_env("RATE_LIMIT_WEBHOOK_PER_MINUTE", 100)
    RATE_LIMIT_PAYMENT_INIT_PER_MINUTE = _int_env("RATE_LIMIT_PAYMENT_INIT_PER_MINUTE", 5)

    # Reverse proxies in front of the app; their X-Forwarded-For hops are trusted
    TRUSTED_PROXY_COUNT = _int_env("TRUSTED_PROXY_COUNT", 0)

    # Buyer fee in basis points (100 = 1%)
    BUYER_FEE_BPS = _int_env("BUYER_FEE_BPS", 100)
    TRIAL_DAYS = _int_env("TRIAL_DAYS", 14)

    # Currency for catalog prices and direct-checkout orders
    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "ETB")

    # Outbound notifications (email service bridge). Unset = notifications dropped.
    NOTIFICATION_WEBHOOK_URL = os.environ.get("NOTIFICATION_WEBHOOK_URL")
    NOTIFICATION_TIMEOUT_SECONDS = _int_env("NOTIFICATION_TIMEOUT_SECONDS", 5)

# backend/storefront/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/storefront.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///storefront.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # "development" | "staging" | "production"
    APP_ENV = os.environ.get("APP_ENV", "development")
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Public base URL used for gateway finish/error/pending redirects
    APP_URL = os.environ.get("APP_URL", "http://localhost:3000")

    # Midtrans credentials (sandbox unless MIDTRANS_IS_PRODUCTION is set)
    MIDTRANS_SERVER_KEY = os.environ.get("MIDTRANS_SERVER_KEY", "")
    MIDTRANS_CLIENT_KEY = os.environ.get("MIDTRANS_CLIENT_KEY", "")
    MIDTRANS_IS_PRODUCTION = _env_bool("MIDTRANS_IS_PRODUCTION")
    GATEWAY_TIMEOUT_SECONDS = float(os.environ.get("GATEWAY_TIMEOUT_SECONDS", "10"))

    # Skips webhook signature checks; ignored when APP_ENV is production
    WEBHOOK_SIGNATURE_BYPASS = _env_bool("WEBHOOK_SIGNATURE_BYPASS")

    PAYMENT_MAX_RETRIES = _env_int("PAYMENT_MAX_RETRIES", 5)
    PAYMENT_TOKEN_EXPIRY_MINUTES = _env_int("PAYMENT_TOKEN_EXPIRY_MINUTES", 15)
    RETRY_TOKEN_EXPIRY_MINUTES = _env_int("RETRY_TOKEN_EXPIRY_MINUTES", 10)
    ORDER_NUMBER_MAX_ATTEMPTS = _env_int("ORDER_NUMBER_MAX_ATTEMPTS", 10)

    # When set, confirmed payments may drive tracked stock below zero
    OVERSELL_ALLOW_NEGATIVE_STOCK = _env_bool("OVERSELL_ALLOW_NEGATIVE_STOCK")

    # Pending-order sweep windows
    STALE_PAYMENT_GRACE_MINUTES = _env_int("STALE_PAYMENT_GRACE_MINUTES", 10)
    ORPHAN_ORDER_MINUTES = _env_int("ORPHAN_ORDER_MINUTES", 5)

    # Caller identity is resolved upstream and forwarded in this header
    ACTOR_HEADER = os.environ.get("ACTOR_HEADER", "X-Actor-Id")

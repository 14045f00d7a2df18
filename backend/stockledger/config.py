# backend/stockledger/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes")


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/stockledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///stockledger.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # External POS analytics store (ClickHouse HTTP interface)
    ANALYTICS_HOST = os.environ.get("ANALYTICS_HOST")
    ANALYTICS_PORT = int(os.environ.get("ANALYTICS_PORT", "8123"))
    ANALYTICS_USER = os.environ.get("ANALYTICS_USER")
    ANALYTICS_PASSWORD = os.environ.get("ANALYTICS_PASSWORD")
    ANALYTICS_DATABASE = os.environ.get("ANALYTICS_DATABASE", "dedebi")
    ANALYTICS_SECURE = _env_bool("ANALYTICS_SECURE")
    ANALYTICS_SHOP_ID = os.environ.get("ANALYTICS_SHOP_ID", "")
    # POS stores UTC; business dates are local (UTC+7)
    ANALYTICS_TIME_OFFSET_HOURS = int(os.environ.get("ANALYTICS_TIME_OFFSET_HOURS", "7"))
    ANALYTICS_TIMEOUT_SECONDS = float(os.environ.get("ANALYTICS_TIMEOUT_SECONDS", "60"))
    ANALYTICS_MAX_RETRIES = max(1, int(os.environ.get("ANALYTICS_MAX_RETRIES", "3")))
    ANALYTICS_RETRY_DELAY_SECONDS = float(os.environ.get("ANALYTICS_RETRY_DELAY_SECONDS", "4"))

    # "allow": outflows may drive a balance negative (historical behaviour)
    # "reject": manual outflows and production transforms fail on insufficient stock
    NEGATIVE_BALANCE_POLICY = os.environ.get("NEGATIVE_BALANCE_POLICY", "allow")

    # Browser origins allowed to call the API (comma-separated)
    CORS_ALLOWED_ORIGINS = tuple(
        o.strip()
        for o in os.environ.get("CORS_ALLOWED_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(",")
        if o.strip()
    )
